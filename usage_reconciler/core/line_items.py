"""
Invoice line item parsing.

Classifies free-text invoice descriptions into structured usage records.

Matcher Order (first match wins):
1. Missing cents - Line cannot be costed, skip it
2. Mid-month payment - Prepayment credit, tracked separately
3. Token-based usage - "N token-based usage calls to <model>, totalling: $X"
4. Generic request line - "N <phrase> requests ...", model classified from phrase
5. Leading count only - Model unknown, count recovered
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

import structlog

from .payloads import RawInvoiceLine

logger = structlog.get_logger()

MID_MONTH_MARKER = "Mid-month usage paid"
UNKNOWN_MODEL = "unknown-model"
TOOL_CALLS_MODEL = "tool-calls"
FAST_PREMIUM_MODEL = "fast-premium"

TOKEN_BASED_PATTERN = re.compile(
    r"^(\d+) token-based usage calls to ([\w.-]+), totalling: \$(?:[\d.]+)"
)
GENERIC_REQUEST_PATTERN = re.compile(
    r"^(\d+)\s+(.+?)(?: request| calls)?(?: beyond|\*| per|$)",
    re.IGNORECASE
)
KNOWN_MODEL_PATTERN = re.compile(
    r"\b(?:discounted\s+)?("
    r"claude-(?:3-(?:opus|sonnet|haiku)"
    r"|3\.[57]-sonnet(?:-[\w-]+)?(?:-max)?"
    r"|4-sonnet(?:-thinking)?)"
    r"|gpt-(?:4(?:\.\d+|o-128k|-preview)?|3\.5-turbo)"
    r"|gemini-(?:1\.5-flash-500k|2[.-]5-pro-(?:exp-\d{2}-\d{2}|preview-\d{2}-\d{2}|exp-max))"
    r"|o[134](?:-mini)?"
    r")\b",
    re.IGNORECASE
)
EXTRA_FAST_PATTERN = re.compile(r"extra fast premium requests? \(([^)]+)\)", re.IGNORECASE)
LEADING_COUNT_PATTERN = re.compile(r"^(\d+)")

TOOL_CALL_MARKER = "tool calls"
EXTRA_FAST_MARKER = "extra fast premium request"


class LineKind(Enum):
    """What a single invoice line turned out to be."""
    ITEM = "item"
    MID_MONTH_PAYMENT = "mid_month_payment"
    SKIP = "skip"


@dataclass(frozen=True)
class ParsedUsageItem:
    """Structured usage record derived from exactly one invoice line."""
    request_count: int
    model_id: str
    cost_dollars: Decimal
    is_discounted: bool
    source_description: str
    is_token_based: bool = False

    def __post_init__(self):
        """Validate request count is positive."""
        if self.request_count <= 0:
            raise ValueError("request_count must be > 0")

    @property
    def cost_per_request(self) -> Decimal:
        """Cost of a single request in dollars."""
        return self.cost_dollars / Decimal(self.request_count)

    @property
    def is_unknown_model(self) -> bool:
        return self.model_id == UNKNOWN_MODEL


@dataclass(frozen=True)
class LineOutcome:
    """Result of running one invoice line through the matcher chain."""
    kind: LineKind
    item: Optional[ParsedUsageItem] = None
    payment_dollars: Decimal = Decimal("0")
    reason: str = ""

    @classmethod
    def skip(cls, reason: str) -> "LineOutcome":
        return cls(kind=LineKind.SKIP, reason=reason)


def cents_to_dollars(cents: int) -> Decimal:
    """Convert integer cents to an exact dollar amount."""
    return Decimal(cents) / Decimal(100)


def is_discounted(description: str) -> bool:
    """Discount flag applies regardless of which matcher handled the line."""
    return "discounted" in description.lower()


def _build_item(
    line: RawInvoiceLine,
    request_count: int,
    model_id: str,
    is_token_based: bool = False
) -> LineOutcome:
    if request_count == 0:
        return LineOutcome.skip("zero request count")
    return LineOutcome(
        kind=LineKind.ITEM,
        item=ParsedUsageItem(
            request_count=request_count,
            model_id=model_id,
            cost_dollars=cents_to_dollars(line.cents),
            is_discounted=is_discounted(line.description),
            source_description=line.description,
            is_token_based=is_token_based
        )
    )


def classify_model(description: str) -> str:
    """Attribute a generic request line to a model identifier.

    Args:
        description: Full invoice line description

    Returns:
        Known model name, extra-fast qualifier, tool-call sentinel,
        or UNKNOWN_MODEL
    """
    if TOOL_CALL_MARKER in description:
        return TOOL_CALLS_MODEL

    known = KNOWN_MODEL_PATTERN.search(description)
    if known:
        return known.group(1)

    if EXTRA_FAST_MARKER in description:
        qualifier = EXTRA_FAST_PATTERN.search(description)
        if qualifier:
            return qualifier.group(1)
        return FAST_PREMIUM_MODEL

    return UNKNOWN_MODEL


class LineMatcher:
    """One link in the classification chain."""
    name = "base"

    def matches(self, line: RawInvoiceLine) -> bool:
        raise NotImplementedError

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        raise NotImplementedError


class MissingCentsMatcher(LineMatcher):
    name = "missing_cents"

    def matches(self, line: RawInvoiceLine) -> bool:
        return line.cents is None

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        return LineOutcome.skip("missing cents")


class MidMonthPaymentMatcher(LineMatcher):
    name = "mid_month_payment"

    def matches(self, line: RawInvoiceLine) -> bool:
        return MID_MONTH_MARKER in line.description

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        return LineOutcome(
            kind=LineKind.MID_MONTH_PAYMENT,
            payment_dollars=cents_to_dollars(abs(line.cents))
        )


class TokenBasedUsageMatcher(LineMatcher):
    name = "token_based"

    def matches(self, line: RawInvoiceLine) -> bool:
        return TOKEN_BASED_PATTERN.match(line.description) is not None

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        match = TOKEN_BASED_PATTERN.match(line.description)
        return _build_item(line, int(match.group(1)), match.group(2), is_token_based=True)


class GenericRequestMatcher(LineMatcher):
    name = "generic_request"

    def matches(self, line: RawInvoiceLine) -> bool:
        return GENERIC_REQUEST_PATTERN.match(line.description) is not None

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        match = GENERIC_REQUEST_PATTERN.match(line.description)
        return _build_item(line, int(match.group(1)), classify_model(line.description))


class LeadingCountMatcher(LineMatcher):
    name = "leading_count"

    def matches(self, line: RawInvoiceLine) -> bool:
        return LEADING_COUNT_PATTERN.match(line.description) is not None

    def extract(self, line: RawInvoiceLine) -> LineOutcome:
        match = LEADING_COUNT_PATTERN.match(line.description)
        return _build_item(line, int(match.group(1)), UNKNOWN_MODEL)


LINE_MATCHERS: Tuple[LineMatcher, ...] = (
    MissingCentsMatcher(),
    MidMonthPaymentMatcher(),
    TokenBasedUsageMatcher(),
    GenericRequestMatcher(),
    LeadingCountMatcher(),
)


def parse_line_item(
    line: RawInvoiceLine,
    matchers: Tuple[LineMatcher, ...] = LINE_MATCHERS
) -> LineOutcome:
    """Run one invoice line through the matcher chain.

    Never raises for malformed lines; anything that cannot be costed or
    counted comes back as a SKIP outcome with a reason.

    Args:
        line: Raw invoice line
        matchers: Ordered matchers, evaluated until one matches

    Returns:
        LineOutcome describing the item, payment, or skip
    """
    for matcher in matchers:
        if matcher.matches(line):
            outcome = matcher.extract(line)
            if outcome.kind == LineKind.SKIP:
                logger.debug(
                    "Skipping invoice line",
                    matcher=matcher.name,
                    reason=outcome.reason,
                    description=line.description
                )
            elif outcome.item is not None and outcome.item.is_unknown_model:
                logger.debug(
                    "Could not determine model for invoice line",
                    matcher=matcher.name,
                    description=line.description
                )
            return outcome

    logger.debug("Skipping unparseable invoice line", description=line.description)
    return LineOutcome.skip("unparseable description")


def parse_line_items(lines: List[RawInvoiceLine]) -> List[ParsedUsageItem]:
    """Parse lines and keep only usage items, in invoice order."""
    items = []
    for line in lines:
        outcome = parse_line_item(line)
        if outcome.item is not None:
            items.append(outcome.item)
    return items
