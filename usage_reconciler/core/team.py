"""
Team membership resolution.

Decides whether the session user belongs to a team, caching the decision
per subject identifier so the team endpoints are not queried on every
refresh.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import structlog

from usage_reconciler.sources.base import UsageSource
from usage_reconciler.storage.models import TeamMembershipRecord
from usage_reconciler.storage.repository import MembershipStoreError

from .payloads import TeamDetails, TeamMemberSpend, TeamSpend, TeamsPayload

logger = structlog.get_logger()


class MembershipStore(Protocol):
    """Key-value store holding cached membership records."""

    def get(self, subject_id: str) -> Optional[TeamMembershipRecord]:
        ...

    def put(self, subject_id: str, record: TeamMembershipRecord) -> None:
        ...


class TeamMembershipCache:
    """Resolves team membership with at most one lookup per subject.

    A subject change invalidates the previous entry; records are never
    merged across subjects.
    """

    def __init__(self, store: MembershipStore):
        self.store = store

    def resolve(
        self,
        subject_id: str,
        loader: Callable[[], TeamMembershipRecord]
    ) -> TeamMembershipRecord:
        """Return the cached record for a subject, loading it on a miss.

        Args:
            subject_id: Subject identifier from the session token
            loader: Callable performing the fresh lookup

        Returns:
            TeamMembershipRecord for the subject

        Raises:
            Exception: Whatever the loader raises on a miss
        """
        if not subject_id:
            raise ValueError("subject_id is required and cannot be empty")

        cached = self.store.get(subject_id)
        if cached is not None:
            logger.debug("Membership cache hit", is_team_member=cached.is_team_member)
            return cached

        logger.info("Membership cache miss, fetching fresh team data")
        record = loader()
        if record.subject_id != subject_id:
            raise ValueError("loader returned a record for a different subject")

        try:
            self.store.put(subject_id, record)
        except MembershipStoreError as e:
            logger.warning("Membership cache write failed, using fresh record", error=str(e))
            return record

        logger.info(
            "Saved membership cache",
            is_team_member=record.is_team_member,
            team_id=record.team_id
        )
        return record


def load_team_membership(
    source: UsageSource,
    subject_id: str,
    period_anchor: datetime,
    now: Optional[datetime] = None
) -> TeamMembershipRecord:
    """Query the team endpoints for a fresh membership record.

    The first team listed is used; its detail payload provides the
    caller's team-user id.

    Args:
        source: Collaborator serving raw payloads
        subject_id: Subject identifier from the session token
        period_anchor: Subscription anchor from the individual usage payload
        now: Timestamp recorded as last_checked

    Returns:
        Fresh TeamMembershipRecord
    """
    teams = TeamsPayload.from_dict(source.fetch_teams())
    is_team_member = len(teams.team_ids) > 0
    team_id = teams.team_ids[0] if is_team_member else None
    logger.info("Teams response", is_team_member=is_team_member, team_count=len(teams.team_ids))

    team_user_id = None
    if team_id is not None:
        details = TeamDetails.from_dict(source.fetch_team_details(team_id))
        team_user_id = details.user_id
        logger.info("Team details response", member_count=details.member_count)

    return TeamMembershipRecord(
        subject_id=subject_id,
        is_team_member=is_team_member,
        team_id=team_id,
        team_user_id=team_user_id,
        period_anchor=period_anchor,
        last_checked=now or datetime.now(timezone.utc)
    )


def extract_user_spend(team_spend: TeamSpend, team_user_id: int) -> Optional[TeamMemberSpend]:
    """Find the caller's entry in a team spend payload.

    Args:
        team_spend: Decoded team spend payload
        team_user_id: Caller's id within the team

    Returns:
        The caller's spend entry, or None if absent
    """
    entry = team_spend.find_member(team_user_id)
    if entry is None:
        logger.warning(
            "User spend data not found in team spend response",
            searched_user_id=team_user_id,
            available_user_ids=[member.user_id for member in team_spend.members]
        )
        return None

    logger.debug(
        "Extracted user spend data",
        user_id=entry.user_id,
        role=entry.role,
        spend_cents=entry.spend_cents,
        fast_premium_requests=entry.fast_premium_requests
    )
    return entry
