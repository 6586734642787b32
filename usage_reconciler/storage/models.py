"""
Data models for storage layer.

Defines the cached team membership record and its persisted form.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from usage_reconciler.core.payloads import parse_timestamp


def _to_epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class TeamMembershipRecord:
    """Cached decision on whether a subject belongs to a team.

    Keyed by the subject identifier from the session token. A record for a
    different subject is never reused.
    """
    subject_id: str
    is_team_member: bool
    period_anchor: datetime
    last_checked: datetime
    team_id: Optional[int] = None
    team_user_id: Optional[int] = None

    def __post_init__(self):
        """Validate subject identifier is present."""
        if not self.subject_id:
            raise ValueError("subject_id is required and cannot be empty")

    @property
    def can_use_team_spend(self) -> bool:
        """Team spend needs both the team and the caller's team-user id."""
        return bool(self.is_team_member and self.team_id and self.team_user_id)

    def to_cache_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted cache record layout."""
        return {
            "userId": self.team_user_id or 0,
            "jwtSub": self.subject_id,
            "isTeamMember": self.is_team_member,
            "teamId": self.team_id,
            "lastChecked": _to_epoch_millis(self.last_checked),
            "startOfMonth": self.period_anchor.isoformat()
        }

    @classmethod
    def from_cache_dict(cls, data: Dict[str, Any]) -> "TeamMembershipRecord":
        """Rebuild a record from its persisted layout.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            subject_id = data["jwtSub"]
            start_of_month = data["startOfMonth"]
            last_checked = data["lastChecked"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Cache record missing field: {e}") from e

        if not isinstance(subject_id, str) or not start_of_month:
            raise ValueError("Cache record has invalid jwtSub or startOfMonth")
        if not isinstance(last_checked, (int, float)) or isinstance(last_checked, bool):
            raise ValueError("Cache record has invalid lastChecked")

        is_team_member = data.get("isTeamMember", False)
        if not isinstance(is_team_member, bool):
            raise ValueError("Cache record has invalid isTeamMember")

        team_id = _optional_id(data.get("teamId"), "teamId")
        team_user_id = _optional_id(data.get("userId"), "userId") or None

        try:
            checked_at = _from_epoch_millis(last_checked)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Cache record lastChecked out of range: {last_checked}") from e

        return cls(
            subject_id=subject_id,
            is_team_member=is_team_member,
            period_anchor=parse_timestamp(start_of_month),
            last_checked=checked_at,
            team_id=team_id,
            team_user_id=team_user_id
        )


def _optional_id(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Cache record has invalid {field}")
    return value
