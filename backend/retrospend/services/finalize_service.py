from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from retrospend.exceptions import BadRequestError
from retrospend.models.category import Category
from retrospend.models.expense import Expense
from retrospend.schemas.transaction import FinalizeResult, SelectedTransaction
from retrospend.services.amortization_service import sync_amortization, to_cents

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def build_fingerprint(txn_date: date, title: str, amount: Decimal, currency: str) -> str:
    """Key used to recognise a transaction that was already imported."""
    normalized_amount = abs(Decimal(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return f"{txn_date.isoformat()}|{title.strip()}|{normalized_amount}|{currency.upper()}"


async def _existing_fingerprints(
    db: AsyncSession, user_id: uuid.UUID, dates: Iterable[date]
) -> set[str]:
    dates = sorted(set(dates))
    if not dates:
        return set()
    result = await db.execute(
        select(Expense.date, Expense.title, Expense.amount_cents, Expense.currency).where(
            Expense.user_id == user_id,
            Expense.date.in_(dates),
        )
    )
    return {
        build_fingerprint(txn_date, title, Decimal(amount_cents) / 100, currency)
        for txn_date, title, amount_cents, currency in result.all()
    }


async def _valid_category_ids(
    db: AsyncSession, user_id: uuid.UUID, rows: Sequence[SelectedTransaction]
) -> set[uuid.UUID]:
    requested = {row.category_id for row in rows if row.category_id is not None}
    if not requested:
        return set()
    result = await db.execute(
        select(Category.id).where(Category.id.in_(requested), Category.user_id == user_id)
    )
    return set(result.scalars().all())


async def import_selected_rows(
    db: AsyncSession,
    user_id: uuid.UUID,
    job_id: uuid.UUID | None,
    rows: Sequence[SelectedTransaction],
    base_currency: str = "USD",
) -> FinalizeResult:
    """Persist reviewed rows as expenses, skipping ones that already exist.

    A row is a duplicate when its fingerprint matches an existing expense of
    the same owner on the same day, or a row created earlier in this batch.
    Rows must already carry a usable exchange rate and USD amount (the base
    currency defaults to a rate of 1); a row without them aborts the whole
    call. Nothing is committed here.
    """
    seen = await _existing_fingerprints(db, user_id, (row.date for row in rows))
    valid_categories = await _valid_category_ids(db, user_id, rows)

    imported = 0
    duplicates = 0
    for row in rows:
        fingerprint = build_fingerprint(row.date, row.title, row.amount, row.currency)
        if fingerprint in seen:
            duplicates += 1
            continue

        exchange_rate = row.exchange_rate
        if exchange_rate is None and row.currency == base_currency.upper():
            exchange_rate = Decimal(1)
        amount_in_usd = row.amount_in_usd
        if amount_in_usd is None and exchange_rate:
            amount_in_usd = row.amount / exchange_rate
        if not exchange_rate or not amount_in_usd:
            raise BadRequestError(
                f"Missing exchange rate or USD amount for {row.currency} on row: {row.title}"
            )

        expense = Expense(
            id=uuid.uuid4(),
            user_id=user_id,
            title=row.title.strip(),
            amount_cents=to_cents(row.amount),
            currency=row.currency,
            exchange_rate=float(exchange_rate),
            amount_usd_cents=to_cents(amount_in_usd),
            date=row.date,
            location=row.location or None,
            description=row.description or None,
            category_id=row.category_id if row.category_id in valid_categories else None,
            pricing_source=row.pricing_source or "IMPORT",
            import_job_id=job_id,
        )
        db.add(expense)
        await db.flush()
        imported += 1

        if row.amortize_over and row.amortize_over > 1:
            children = await sync_amortization(db, expense, row.amortize_over)
            imported += len(children)

        seen.add(fingerprint)

    logger.info(
        "Prepared %d expenses for user %s (%d duplicates skipped)", imported, user_id, duplicates
    )
    return FinalizeResult(imported_count=imported, skipped_duplicates=duplicates)
