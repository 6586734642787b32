"""
Usage snapshot engine.

Fetches raw payloads from a UsageSource and runs period calculation,
line parsing, aggregation and reconciliation to produce one snapshot.

Failure Handling:
1. Individual usage - Fatal, premium counters have no other source
2. Monthly invoice - That period degrades to empty usage
3. Team membership / team spend - Degrades to individual invoice totals
4. Usage-based status - Degrades to disabled
"""

from datetime import datetime, timezone
from typing import Optional

import structlog

from usage_reconciler.sources.base import UsageSource
from usage_reconciler.storage.models import TeamMembershipRecord

from .aggregator import PeriodUsage, aggregate_period
from .payloads import (
    IndividualUsage,
    MonthlyInvoice,
    TeamSpend,
    UsageBasedStatus,
)
from .periods import BillingPeriod, compute_billing_periods
from .reconciler import SpendReconciler, UsageSnapshot, select_active_period
from .session import SessionIdentity
from .team import TeamMembershipCache, load_team_membership
from .unknown_models import UnknownModelDetector

logger = structlog.get_logger()


class UsageFetchError(Exception):
    """Raised when a collaborator call the snapshot cannot do without fails."""

    def __init__(self, call: str, cause: Exception):
        super().__init__(f"{call} fetch failed: {cause}")
        self.call = call
        self.cause = cause


def fetch_individual_usage(source: UsageSource) -> IndividualUsage:
    """Fetch and decode individual usage.

    Raises:
        UsageFetchError: If the fetch or decode fails
    """
    try:
        return IndividualUsage.from_dict(source.fetch_individual_usage())
    except Exception as e:
        logger.error("Individual usage fetch failed", error=str(e))
        raise UsageFetchError("individual_usage", e) from e


def fetch_period_usage(source: UsageSource, period: BillingPeriod) -> PeriodUsage:
    """Fetch one period's invoice, degrading to empty usage on failure."""
    try:
        invoice = MonthlyInvoice.from_dict(
            source.fetch_monthly_invoice(period.month, period.year)
        )
    except Exception as e:
        logger.warning(
            "Monthly invoice fetch failed, using empty data",
            month=period.month,
            year=period.year,
            error=str(e)
        )
        return PeriodUsage.empty(period)
    return aggregate_period(period, invoice)


def resolve_membership(
    source: UsageSource,
    session: SessionIdentity,
    cache: TeamMembershipCache,
    period_anchor: datetime,
    now: datetime
) -> TeamMembershipRecord:
    """Resolve team membership, degrading to non-member on failure.

    The degraded record is not cached, so the next refresh retries.
    """
    try:
        return cache.resolve(
            session.subject_id,
            lambda: load_team_membership(source, session.subject_id, period_anchor, now)
        )
    except Exception as e:
        logger.warning("Team membership check failed, treating as individual", error=str(e))
        return TeamMembershipRecord(
            subject_id=session.subject_id,
            is_team_member=False,
            period_anchor=period_anchor,
            last_checked=now
        )


def fetch_team_spend(
    source: UsageSource,
    membership: TeamMembershipRecord
) -> Optional[TeamSpend]:
    """Fetch team spend for team members, None when unavailable."""
    if not membership.can_use_team_spend:
        return None

    logger.info("User is team member, fetching team spend data", team_id=membership.team_id)
    try:
        return TeamSpend.from_dict(source.fetch_team_spend(membership.team_id))
    except Exception as e:
        logger.warning(
            "Team spend fetch failed, falling back to individual usage",
            team_id=membership.team_id,
            error=str(e)
        )
        return None


def fetch_usage_based_status(
    source: UsageSource,
    team_id: Optional[int] = None
) -> UsageBasedStatus:
    """Fetch usage-based pricing status, disabled on failure."""
    try:
        return UsageBasedStatus.from_dicts(
            source.fetch_usage_based_status(team_id),
            source.fetch_hard_limit(team_id)
        )
    except Exception as e:
        logger.warning("Usage-based status check failed, assuming disabled", error=str(e))
        return UsageBasedStatus()


def observe_unknown_models(detector: UnknownModelDetector, usage: PeriodUsage) -> None:
    """Feed the items of the reported period that have no known model."""
    for item in usage.items:
        detector.observe_item(item)


def build_usage_snapshot(
    session: SessionIdentity,
    source: UsageSource,
    cache: TeamMembershipCache,
    detector: UnknownModelDetector,
    reconciler: Optional[SpendReconciler] = None,
    now: Optional[datetime] = None
) -> UsageSnapshot:
    """Build one usage snapshot.

    Snapshot builds must be serialized by the host: the detector is
    mutated during the build.

    Args:
        session: Identity parsed from the session token
        source: Collaborator serving raw payloads
        cache: Team membership cache
        detector: Session-owned unknown model detector
        reconciler: Reconciler to use, defaults to SpendReconciler()
        now: Evaluation time, defaults to the current UTC time

    Returns:
        Immutable UsageSnapshot

    Raises:
        UsageFetchError: If individual usage cannot be fetched
    """
    reconciler = reconciler or SpendReconciler()
    now = now or datetime.now(timezone.utc)

    individual_usage = fetch_individual_usage(source)
    try:
        reconciler.premium_counter(individual_usage)
    except ValueError as e:
        raise UsageFetchError("individual_usage", e) from e

    current, previous = compute_billing_periods(individual_usage.start_of_month, now)
    logger.info(
        "Using subscription-based billing periods",
        current=f"{current.month}/{current.year}",
        previous=f"{previous.month}/{previous.year}"
    )

    current_usage = fetch_period_usage(source, current)
    previous_usage = fetch_period_usage(source, previous)

    membership = resolve_membership(
        source, session, cache, individual_usage.start_of_month, now
    )
    team_spend = fetch_team_spend(source, membership)
    usage_based = fetch_usage_based_status(source, membership.team_id)

    is_team_sourced = reconciler.team_spend_cents(membership, team_spend) is not None
    if not is_team_sourced:
        active = select_active_period(current_usage, previous_usage, team_spend_in_effect=False)
        observe_unknown_models(detector, active)

    return reconciler.reconcile(
        membership=membership,
        individual_usage=individual_usage,
        team_spend=team_spend,
        current_period=current_usage,
        previous_period=previous_usage,
        usage_based=usage_based,
        unknown_models=detector.take_report() or ()
    )
