"""
Spend reconciliation between team and individual sources.

Reconciliation Rules:
1. Premium request counters - Always from individual usage; team spend lags
2. Cost - Team spend when the caller has an entry in it, else invoice totals
3. Active period - Current period if it has items or team spend is in
   effect, else the previous period (early-in-cycle gap)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

import structlog

from usage_reconciler.storage.models import TeamMembershipRecord

from .aggregator import ZERO, PeriodUsage
from .line_items import cents_to_dollars
from .payloads import IndividualUsage, TeamSpend, UsageBasedStatus
from .team import extract_user_spend

logger = structlog.get_logger()

DEFAULT_PRIMARY_MODEL = "gpt-4"
DEFAULT_REQUEST_LIMIT = 500


@dataclass(frozen=True)
class PremiumRequestCounter:
    """Premium request usage against the monthly quota."""
    current: int
    limit: int
    period_start: datetime

    def __post_init__(self):
        """Validate counters are non-negative."""
        if self.current < 0:
            raise ValueError("current cannot be negative")
        if self.limit < 0:
            raise ValueError("limit cannot be negative")

    @property
    def percent(self) -> int:
        """Quota used, rounded to a whole percent."""
        if self.limit == 0:
            return 0
        return round(self.current / self.limit * 100)


@dataclass(frozen=True)
class UsageSnapshot:
    """Normalized accounting snapshot for one refresh."""
    current_period: PeriodUsage
    previous_period: PeriodUsage
    premium_requests: PremiumRequestCounter
    is_team_sourced: bool = False
    team_id: Optional[int] = None
    team_spend_cents: Optional[int] = None
    usage_based: UsageBasedStatus = UsageBasedStatus()
    unknown_models: Tuple[str, ...] = ()

    @property
    def active_period(self) -> PeriodUsage:
        """Period whose figures the snapshot reports."""
        return select_active_period(
            self.current_period, self.previous_period, self.is_team_sourced
        )

    @property
    def actual_cost(self) -> Decimal:
        """Usage-based cost in dollars for the active period."""
        if self.is_team_sourced and self.team_spend_cents is not None:
            return cents_to_dollars(self.team_spend_cents)
        return self.active_period.total_cost

    @property
    def unpaid_balance(self) -> Decimal:
        """Outstanding balance; team spend is always current so never unpaid."""
        if self.is_team_sourced:
            return ZERO
        return max(ZERO, self.actual_cost - self.active_period.mid_month_payment)

    @property
    def usage_based_percent(self) -> Decimal:
        """Share of the usage-based hard limit consumed."""
        limit = self.usage_based.limit_dollars
        if not self.usage_based.is_enabled or not limit:
            return ZERO
        return self.actual_cost / limit * 100


def select_active_period(
    current: PeriodUsage,
    previous: PeriodUsage,
    team_spend_in_effect: bool
) -> PeriodUsage:
    """Pick the period to report.

    Args:
        current: Current period usage
        previous: Previous period usage
        team_spend_in_effect: Whether team spend is the cost source

    Returns:
        Current period if it has items or team spend applies, else previous
    """
    if current.items or team_spend_in_effect:
        return current
    return previous


class SpendReconciler:
    """Merges team and individual signals into one snapshot."""

    def __init__(
        self,
        primary_model: str = DEFAULT_PRIMARY_MODEL,
        default_request_limit: int = DEFAULT_REQUEST_LIMIT
    ):
        """Initialize the reconciler.

        Args:
            primary_model: Individual usage entry holding premium counters
            default_request_limit: Quota used when the payload reports none

        Raises:
            ValueError: If model is empty or limit is not positive
        """
        if not primary_model or not primary_model.strip():
            raise ValueError("primary_model is required and cannot be empty")
        if default_request_limit <= 0:
            raise ValueError("default_request_limit must be > 0")

        self.primary_model = primary_model
        self.default_request_limit = default_request_limit

    def premium_counter(self, individual_usage: IndividualUsage) -> PremiumRequestCounter:
        """Read premium counters from the primary model entry.

        Raises:
            PayloadError: If the primary model entry is missing
        """
        entry = individual_usage.get_model(self.primary_model)
        return PremiumRequestCounter(
            current=entry.num_requests,
            limit=entry.max_request_usage or self.default_request_limit,
            period_start=individual_usage.start_of_month
        )

    def team_spend_cents(
        self,
        membership: TeamMembershipRecord,
        team_spend: Optional[TeamSpend]
    ) -> Optional[int]:
        """Resolve the caller's team spend, or None when it does not apply."""
        if not membership.can_use_team_spend or team_spend is None:
            return None

        entry = extract_user_spend(team_spend, membership.team_user_id)
        if entry is None:
            return None
        return entry.spend_cents or 0

    def reconcile(
        self,
        membership: TeamMembershipRecord,
        individual_usage: IndividualUsage,
        team_spend: Optional[TeamSpend],
        current_period: PeriodUsage,
        previous_period: PeriodUsage,
        usage_based: Optional[UsageBasedStatus] = None,
        unknown_models: Tuple[str, ...] = ()
    ) -> UsageSnapshot:
        """Build the snapshot from already-fetched, decoded inputs.

        Args:
            membership: Resolved team membership
            individual_usage: Decoded individual usage payload
            team_spend: Decoded team spend payload, None if unavailable
            current_period: Aggregated current period
            previous_period: Aggregated previous period
            usage_based: Usage-based pricing status
            unknown_models: Unknown model report to attach

        Returns:
            Immutable UsageSnapshot
        """
        counter = self.premium_counter(individual_usage)
        spend_cents = self.team_spend_cents(membership, team_spend)
        is_team_sourced = spend_cents is not None

        if membership.can_use_team_spend and not is_team_sourced:
            logger.info("Team spend unavailable, using individual invoice totals")

        snapshot = UsageSnapshot(
            current_period=current_period,
            previous_period=previous_period,
            premium_requests=counter,
            is_team_sourced=is_team_sourced,
            team_id=membership.team_id,
            team_spend_cents=spend_cents,
            usage_based=usage_based or UsageBasedStatus(),
            unknown_models=unknown_models
        )

        active = snapshot.active_period
        logger.info(
            "Reconciled usage snapshot",
            source="team_spend" if is_team_sourced else "invoice",
            active_month=active.period.month,
            active_year=active.period.year,
            actual_cost=str(snapshot.actual_cost),
            premium_current=counter.current,
            premium_limit=counter.limit
        )
        return snapshot
