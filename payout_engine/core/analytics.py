"""
Payout analytics.

Read-only rollups over an owner's payout transactions. Month boundaries are
calendar months in the observer's timezone: the tzinfo of `now`, or the
configured reporting zone. Boundaries are rebuilt from wall-clock fields, so
a named zone picks up the UTC offset in force on the 1st, not today's.
"""
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.config import get_settings
from payout_engine.core.calculator import to_money
from payout_engine.core.exceptions import ValidationError
from payout_engine.database.models import Rail, Transaction, TransactionStatus

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")
PENDING_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value)
TREND_PERIODS = ("month", "quarter", "year")


@dataclass
class RailBreakdown:
    count: int = 0
    amount: Decimal = ZERO


@dataclass
class PayoutSummary:
    total_earnings: Decimal = ZERO
    this_month_earnings: Decimal = ZERO
    last_month_earnings: Decimal = ZERO
    pending_payouts: Decimal = ZERO
    completed_payouts: Decimal = ZERO
    average_payout_amount: Decimal = ZERO
    monthly_growth: Decimal = ZERO
    rails: Dict[str, RailBreakdown] = field(
        default_factory=lambda: {rail.value: RailBreakdown() for rail in Rail}
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_earnings": str(self.total_earnings),
            "this_month_earnings": str(self.this_month_earnings),
            "last_month_earnings": str(self.last_month_earnings),
            "pending_payouts": str(self.pending_payouts),
            "completed_payouts": str(self.completed_payouts),
            "average_payout_amount": str(self.average_payout_amount),
            "monthly_growth": str(self.monthly_growth),
            "rails": {
                rail: {"count": b.count, "amount": str(b.amount)} for rail, b in self.rails.items()
            },
        }


def reporting_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().reporting_timezone)


def _as_aware(value: datetime, tz: Any) -> datetime:
    # SQLite hands back naive datetimes; stored values are UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(this_month: datetime) -> datetime:
    if this_month.month == 1:
        return this_month.replace(year=this_month.year - 1, month=12)
    return this_month.replace(month=this_month.month - 1)


def monthly_growth(this_month: Decimal, last_month: Decimal) -> Decimal:
    """Month-over-month growth percentage, 2 dp; 0 when last month is 0."""
    if last_month <= 0:
        return ZERO
    return to_money((this_month - last_month) / last_month * 100)


def period_key(value: datetime, period: str) -> str:
    if period == "month":
        return f"{value.year}-{value.month:02d}"
    if period == "quarter":
        return f"{value.year}-Q{(value.month - 1) // 3 + 1}"
    return str(value.year)


async def _payouts(owner_id: uuid.UUID, db: AsyncSession) -> List[Transaction]:
    result = await db.execute(
        select(Transaction).where(
            Transaction.owner_id == owner_id, Transaction.transaction_type == "payout"
        )
    )
    return list(result.scalars().all())


async def payout_summary(
    owner_id: uuid.UUID, db: AsyncSession, now: Optional[datetime] = None
) -> PayoutSummary:
    """
    Earnings rollup for one owner.

    Args:
        owner_id: Transaction owner
        db: Database session
        now: Observer's clock; defaults to the current time in the reporting zone

    Returns:
        PayoutSummary: Earnings count completed payouts only. Pending covers
            pending and processing. Rail counts include every payout.
    """
    now = now or datetime.now(reporting_zone())
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    tz = now.tzinfo
    this_month = _month_start(now)
    last_month = _previous_month_start(this_month)

    summary = PayoutSummary()
    completed_count = 0

    for tx in await _payouts(owner_id, db):
        amount = to_money(tx.amount)
        rail = summary.rails.setdefault(tx.payment_method, RailBreakdown())
        rail.count += 1
        rail.amount += amount

        if tx.status in PENDING_STATUSES:
            summary.pending_payouts += amount
            continue
        if tx.status != TransactionStatus.COMPLETED.value:
            continue

        completed_count += 1
        summary.completed_payouts += amount
        created = _as_aware(tx.created_at, tz)
        if created >= this_month:
            summary.this_month_earnings += amount
        elif created >= last_month:
            summary.last_month_earnings += amount

    summary.total_earnings = summary.completed_payouts
    if completed_count:
        summary.average_payout_amount = to_money(summary.total_earnings / completed_count)
    summary.monthly_growth = monthly_growth(
        summary.this_month_earnings, summary.last_month_earnings
    )

    logger.debug(
        "payout_summary_computed",
        owner_id=str(owner_id),
        total_earnings=str(summary.total_earnings),
        completed=completed_count,
    )
    return summary


async def earnings_trend(
    owner_id: uuid.UUID,
    db: AsyncSession,
    period: str = "month",
    tz: Any = None,
) -> List[Dict[str, Any]]:
    """
    Completed earnings grouped by month, quarter or year.

    Returns:
        List[Dict[str, Any]]: [{"period", "revenue", "campaigns"}] oldest first,
            where campaigns counts distinct campaigns paid in that period
    """
    if period not in TREND_PERIODS:
        raise ValidationError(
            f"Period must be one of: {', '.join(TREND_PERIODS)}", field="period"
        )
    tz = tz or reporting_zone()

    revenue: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    campaigns: Dict[str, set] = defaultdict(set)
    for tx in await _payouts(owner_id, db):
        if tx.status != TransactionStatus.COMPLETED.value:
            continue
        key = period_key(_as_aware(tx.created_at, tz), period)
        revenue[key] += to_money(tx.amount)
        if tx.campaign_id is not None:
            campaigns[key].add(tx.campaign_id)

    return [
        {"period": key, "revenue": str(revenue[key]), "campaigns": len(campaigns[key])}
        for key in sorted(revenue)
    ]
