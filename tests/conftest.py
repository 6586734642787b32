"""
Shared fixtures for the test suite.
"""

from datetime import datetime, timezone

import pytest
import structlog
from jose import jwt

from usage_reconciler.core.payloads import IndividualUsage, MonthlyInvoice


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any logging configuration a test (e.g. the CLI) applied."""
    yield
    structlog.reset_defaults()


def make_token(user_id: str = "user_01", subject: str = "auth0|user_01") -> str:
    """Build a session token whose JWT is signed with a throwaway key."""
    encoded = jwt.encode({"sub": subject}, "not-verified", algorithm="HS256")
    return f"{user_id}%3A%3A{encoded}"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def individual_usage_payload(
    num_requests: int = 120,
    max_request_usage=500,
    start_of_month: str = "2024-01-15T08:00:00.000Z"
) -> dict:
    return {
        "gpt-4": {
            "numRequests": num_requests,
            "maxRequestUsage": max_request_usage,
            "numTokens": 250000
        },
        "gpt-4-32k": {
            "numRequests": 3,
            "maxRequestUsage": None,
            "numTokens": 0
        },
        "startOfMonth": start_of_month
    }


def invoice_payload(*lines, unpaid: bool = False) -> dict:
    """Build a monthly invoice payload from (description, cents) tuples."""
    items = []
    for description, cents in lines:
        item = {"description": description}
        if cents is not None:
            item["cents"] = cents
        items.append(item)
    return {"items": items, "hasUnpaidMidMonthInvoice": unpaid}


@pytest.fixture
def individual_usage() -> IndividualUsage:
    return IndividualUsage.from_dict(individual_usage_payload())


@pytest.fixture
def sample_invoice() -> MonthlyInvoice:
    return MonthlyInvoice.from_dict(invoice_payload(
        ("142 token-based usage calls to claude-4-sonnet, totalling: $9.94", 994),
        ("3 extra fast premium requests (haiku)", 150),
        ("Mid-month usage paid for March", -500),
        ("10 tool calls", 40),
    ))
