"""
Typed views over raw collaborator payloads.

Decodes the camelCase JSON documents returned by the usage backend into
immutable records. Structural problems raise PayloadError; anomalies inside
a single invoice line never do.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from dateutil.parser import isoparse


class PayloadError(ValueError):
    """Raised when a payload is missing required structure."""


def _require_mapping(data: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise PayloadError(f"{name} payload must be an object, got {type(data).__name__}")
    return data


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp or epoch millis into an aware UTC datetime.

    Raises:
        PayloadError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise PayloadError(f"Timestamp out of range: {value!r}") from e
    elif isinstance(value, str) and value.strip():
        try:
            parsed = isoparse(value.strip())
        except (ValueError, OverflowError) as e:
            raise PayloadError(f"Invalid timestamp: {value!r}") from e
    else:
        raise PayloadError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class RawInvoiceLine:
    """One billed unit exactly as the invoice reports it."""
    description: str
    cents: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawInvoiceLine":
        """Decode a line; a missing or non-numeric cents field decodes to None."""
        description = data.get("description")
        return cls(
            description=description if isinstance(description, str) else "",
            cents=_optional_int(data.get("cents"))
        )


@dataclass(frozen=True)
class MonthlyInvoice:
    """Invoice payload for one billing month."""
    items: Tuple[RawInvoiceLine, ...] = ()
    has_unpaid_mid_month_invoice: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "MonthlyInvoice":
        data = _require_mapping(data, "Monthly invoice")
        raw_items = data.get("items") or []
        if not isinstance(raw_items, list):
            raise PayloadError("Monthly invoice 'items' must be a list")
        return cls(
            items=tuple(
                RawInvoiceLine.from_dict(item)
                for item in raw_items
                if isinstance(item, Mapping)
            ),
            has_unpaid_mid_month_invoice=bool(data.get("hasUnpaidMidMonthInvoice", False))
        )


@dataclass(frozen=True)
class ModelUsage:
    """Request counters reported for one model."""
    num_requests: int
    max_request_usage: Optional[int]
    num_tokens: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelUsage":
        return cls(
            num_requests=_optional_int(data.get("numRequests")) or 0,
            max_request_usage=_optional_int(data.get("maxRequestUsage")),
            num_tokens=_optional_int(data.get("numTokens")) or 0
        )


@dataclass(frozen=True)
class IndividualUsage:
    """Per-model usage counters plus the subscription anchor."""
    models: Dict[str, ModelUsage]
    start_of_month: datetime

    @classmethod
    def from_dict(cls, data: Any) -> "IndividualUsage":
        data = _require_mapping(data, "Individual usage")
        if "startOfMonth" not in data:
            raise PayloadError("Individual usage payload missing 'startOfMonth'")

        models = {
            name: ModelUsage.from_dict(entry)
            for name, entry in data.items()
            if name != "startOfMonth" and isinstance(entry, Mapping)
        }
        return cls(models=models, start_of_month=parse_timestamp(data["startOfMonth"]))

    def get_model(self, model: str) -> ModelUsage:
        """Get the counters for a specific model.

        Raises:
            PayloadError: If the model has no entry
        """
        if model not in self.models:
            raise PayloadError(f"Individual usage payload has no entry for model: {model}")
        return self.models[model]


@dataclass(frozen=True)
class TeamsPayload:
    """Teams the session user belongs to."""
    team_ids: Tuple[int, ...]

    @classmethod
    def from_dict(cls, data: Any) -> "TeamsPayload":
        data = _require_mapping(data, "Teams")
        teams = data.get("teams") or []
        team_ids = []
        for team in teams:
            team_id = _optional_int(team.get("id")) if isinstance(team, Mapping) else None
            if team_id is not None:
                team_ids.append(team_id)
        return cls(team_ids=tuple(team_ids))


@dataclass(frozen=True)
class TeamDetails:
    """Team detail payload, used to resolve the caller's team-user id."""
    user_id: Optional[int]
    member_count: int

    @classmethod
    def from_dict(cls, data: Any) -> "TeamDetails":
        data = _require_mapping(data, "Team details")
        members = data.get("teamMembers") or []
        return cls(
            user_id=_optional_int(data.get("userId")),
            member_count=len(members) if isinstance(members, list) else 0
        )


@dataclass(frozen=True)
class TeamMemberSpend:
    """Spend reported for one team member."""
    user_id: int
    name: str = ""
    email: str = ""
    role: str = ""
    spend_cents: Optional[int] = None
    fast_premium_requests: int = 0
    hard_limit_override_dollars: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TeamMemberSpend":
        user_id = _optional_int(data.get("userId"))
        if user_id is None:
            raise PayloadError("Team member spend entry missing 'userId'")
        override = data.get("hardLimitOverrideDollars")
        return cls(
            user_id=user_id,
            name=data.get("name") or "",
            email=data.get("email") or "",
            role=data.get("role") or "",
            spend_cents=_optional_int(data.get("spendCents")),
            fast_premium_requests=_optional_int(data.get("fastPremiumRequests")) or 0,
            hard_limit_override_dollars=(
                Decimal(str(override))
                if isinstance(override, (int, float)) and not isinstance(override, bool)
                else None
            )
        )


@dataclass(frozen=True)
class TeamSpend:
    """Per-member spend reported by the team administration endpoint."""
    members: Tuple[TeamMemberSpend, ...]
    total_members: int

    @classmethod
    def from_dict(cls, data: Any) -> "TeamSpend":
        data = _require_mapping(data, "Team spend")
        entries = data.get("teamMemberSpend")
        if not isinstance(entries, list):
            raise PayloadError("Team spend payload missing 'teamMemberSpend' list")
        members = tuple(
            TeamMemberSpend.from_dict(entry)
            for entry in entries
            if isinstance(entry, Mapping)
        )
        return cls(
            members=members,
            total_members=_optional_int(data.get("totalMembers")) or len(members)
        )

    def find_member(self, user_id: int) -> Optional[TeamMemberSpend]:
        """Find the spend entry for a team-user id, or None."""
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


@dataclass(frozen=True)
class UsageBasedStatus:
    """Whether usage-based pricing is enabled, and its hard limit."""
    is_enabled: bool = False
    limit_dollars: Optional[Decimal] = None

    @classmethod
    def from_dicts(cls, status: Any, hard_limit: Any) -> "UsageBasedStatus":
        status = _require_mapping(status, "Usage-based status")
        hard_limit = _require_mapping(hard_limit, "Hard limit")
        limit = hard_limit.get("hardLimit")
        return cls(
            is_enabled=status.get("usageBasedPremiumRequests") is True,
            limit_dollars=(
                Decimal(str(limit))
                if isinstance(limit, (int, float)) and not isinstance(limit, bool)
                else None
            )
        )
