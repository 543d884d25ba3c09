from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from retrospend.exceptions import BadRequestError, ForbiddenError, NotFoundError
from retrospend.models.expense import Expense

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AmortizationSplit:
    date: date
    amount_cents: int
    amount_usd_cents: int

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_cents) / 100

    @property
    def amount_in_usd(self) -> Decimal:
        return Decimal(self.amount_usd_cents) / 100


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def add_months_clamped(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month.

    2024-01-31 + 1 month is 2024-02-29, not March 2nd.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _distribute(total_cents: int, periods: int) -> list[int]:
    base, remainder = divmod(total_cents, periods)
    return [base + 1 if i < remainder else base for i in range(periods)]


def calculate_splits(
    start: date,
    total_amount: Decimal,
    total_amount_usd: Decimal,
    periods: int,
) -> list[AmortizationSplit]:
    """Split an amount into monthly installments that sum exactly to the total.

    Both amounts are rounded to whole cents independently; the leftover cents
    go one each to the earliest periods, so the native and USD remainders may
    fall on different months.
    """
    if periods < 1:
        raise ValueError("periods must be at least 1")

    native = _distribute(to_cents(total_amount), periods)
    usd = _distribute(to_cents(total_amount_usd), periods)
    return [
        AmortizationSplit(
            date=add_months_clamped(start, i),
            amount_cents=native[i],
            amount_usd_cents=usd[i],
        )
        for i in range(periods)
    ]


async def sync_amortization(db: AsyncSession, parent: Expense, periods: int) -> list[Expense]:
    """Replace the generated children of ``parent`` with ``periods`` new ones.

    Existing children are always deleted first, so calling this again with a
    different period count never needs to diff old and new splits. Does not
    commit; the caller owns the transaction.
    """
    await db.execute(
        delete(Expense).where(
            Expense.parent_id == parent.id,
            Expense.user_id == parent.user_id,
            Expense.is_amortized_child.is_(True),
        )
    )

    parent.is_amortized_parent = periods > 1
    if periods <= 1:
        await db.flush()
        return []

    splits = calculate_splits(
        parent.date,
        Decimal(parent.amount_cents) / 100,
        Decimal(parent.amount_usd_cents) / 100,
        periods,
    )
    children = [
        Expense(
            id=uuid.uuid4(),
            user_id=parent.user_id,
            title=f"{parent.title} ({i + 1}/{periods})",
            amount_cents=split.amount_cents,
            currency=parent.currency,
            exchange_rate=parent.exchange_rate,
            amount_usd_cents=split.amount_usd_cents,
            date=split.date,
            location=parent.location,
            description=parent.description,
            category_id=parent.category_id,
            pricing_source=parent.pricing_source or "MANUAL",
            import_job_id=parent.import_job_id,
            is_amortized_child=True,
            parent_id=parent.id,
        )
        for i, split in enumerate(splits)
    ]
    db.add_all(children)
    await db.flush()
    return children


async def resplit_expense(
    db: AsyncSession,
    user_id: uuid.UUID,
    expense_id: uuid.UUID,
    periods: int,
) -> list[Expense]:
    """Change the period count of an existing expense and regenerate its children."""
    expense = (
        await db.execute(select(Expense).where(Expense.id == expense_id))
    ).scalar_one_or_none()
    if expense is None:
        raise NotFoundError("Expense not found")
    if expense.user_id != user_id:
        raise ForbiddenError("Not authorized to access this expense")
    if expense.is_amortized_child:
        raise BadRequestError("Amortized installments cannot be split again")

    children = await sync_amortization(db, expense, periods)
    await db.commit()
    logger.info("Re-split expense %s into %d periods", expense_id, len(children))
    return children
