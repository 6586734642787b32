"""
Per-period usage aggregation.

Folds parsed invoice lines for one billing period into cost totals.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from .line_items import LineKind, ParsedUsageItem, parse_line_item
from .payloads import MonthlyInvoice
from .periods import BillingPeriod
from .unknown_models import UnknownModelDetector

logger = structlog.get_logger()

ZERO = Decimal("0")


@dataclass(frozen=True)
class MidMonthPaymentLine:
    """Running total after a mid-month prepayment, for downstream display."""
    running_total: Decimal
    description: str


@dataclass(frozen=True)
class PeriodUsage:
    """Usage-based billing data for one billing period."""
    period: BillingPeriod
    items: Tuple[ParsedUsageItem, ...] = ()
    mid_month_payment: Decimal = ZERO
    has_unpaid_mid_month_invoice: bool = False
    payment_lines: Tuple[MidMonthPaymentLine, ...] = ()

    @classmethod
    def empty(cls, period: BillingPeriod) -> "PeriodUsage":
        """Degraded usage for a period whose invoice could not be fetched."""
        return cls(period=period)

    @property
    def total_cost(self) -> Decimal:
        """Sum of positive item costs; credits and zero-cost lines are excluded."""
        return sum(
            (item.cost_dollars for item in self.items if item.cost_dollars > 0),
            ZERO
        )

    @property
    def unpaid_balance(self) -> Decimal:
        """Cost not yet covered by mid-month payments, never negative."""
        return max(ZERO, self.total_cost - self.mid_month_payment)

    @property
    def total_requests(self) -> int:
        return sum(item.request_count for item in self.items)

    @property
    def unresolved_descriptions(self) -> Tuple[str, ...]:
        """Descriptions of items that could not be attributed to a model."""
        return tuple(
            item.source_description for item in self.items if item.is_unknown_model
        )


def aggregate_period(
    period: BillingPeriod,
    invoice: MonthlyInvoice,
    detector: Optional[UnknownModelDetector] = None
) -> PeriodUsage:
    """Aggregate one period's invoice lines into a PeriodUsage.

    Args:
        period: Billing period the invoice belongs to
        invoice: Decoded monthly invoice payload
        detector: Optional detector fed with unattributed lines

    Returns:
        PeriodUsage with items in invoice order
    """
    items: List[ParsedUsageItem] = []
    payment_lines: List[MidMonthPaymentLine] = []
    mid_month_payment = ZERO

    for line in invoice.items:
        outcome = parse_line_item(line)

        if outcome.kind == LineKind.MID_MONTH_PAYMENT:
            mid_month_payment += outcome.payment_dollars
            payment_lines.append(MidMonthPaymentLine(
                running_total=mid_month_payment,
                description=line.description
            ))
            logger.debug(
                "Added mid-month payment",
                amount=str(outcome.payment_dollars),
                total=str(mid_month_payment)
            )
        elif outcome.kind == LineKind.ITEM:
            items.append(outcome.item)
            if detector is not None:
                detector.observe_item(outcome.item)

    usage = PeriodUsage(
        period=period,
        items=tuple(items),
        mid_month_payment=mid_month_payment,
        has_unpaid_mid_month_invoice=invoice.has_unpaid_mid_month_invoice,
        payment_lines=tuple(payment_lines)
    )
    logger.debug(
        "Aggregated billing period",
        month=period.month,
        year=period.year,
        items=len(usage.items),
        total_cost=str(usage.total_cost),
        mid_month_payment=str(mid_month_payment)
    )
    return usage
