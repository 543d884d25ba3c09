from __future__ import annotations

import asyncio
import io
import logging
from decimal import Decimal
from typing import Any

import pandas as pd

from retrospend.config import Settings
from retrospend.exceptions import ImportParseError
from retrospend.models.import_job import ImportKind
from retrospend.plugins import registry
from retrospend.plugins.base import FileParserPlugin, ParseResult, ProgressCallback
from retrospend.plugins.workbook import XLSX_MEDIA_TYPE, is_workbook, workbook_to_csv
from retrospend.schemas.transaction import ParsedTransaction
from retrospend.services.exchange_rates import is_currency_code, parse_date_only, parse_decimal

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["title", "amount", "currency", "date"]


def _read_rows(csv_text: str) -> pd.DataFrame:
    try:
        df = pd.read_csv(
            io.StringIO(csv_text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as exc:
        raise ImportParseError("CSV file is empty") from exc
    except pd.errors.ParserError as exc:
        raise ImportParseError(f"CSV parsing errors: {exc}") from exc

    # Header matching is case-insensitive: "exchangeRate" == "exchangerate"
    df.columns = [str(c).strip().lower() for c in df.columns]

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        plural = "s" if len(missing) > 1 else ""
        raise ImportParseError(f"Missing required column{plural}: {', '.join(missing)}")
    if df.empty:
        raise ImportParseError("CSV file is empty")
    return df


def _cell(row: pd.Series, column: str) -> str:
    value: Any = row.get(column, "")
    return str(value).strip()


def _parse_row(
    index: int, row: pd.Series, base_currency: str, warnings: list[str]
) -> ParsedTransaction | None:
    label = f"Row {index + 1}"

    title = _cell(row, "title")
    if not title:
        warnings.append(f"{label}: Missing title, skipping")
        return None

    amount_str = _cell(row, "amount")
    if not amount_str:
        warnings.append(f"{label}: Missing amount, skipping")
        return None
    amount = parse_decimal(amount_str)
    if amount is None or amount <= 0:
        warnings.append(f'{label}: Invalid amount "{amount_str}", skipping')
        return None

    currency = _cell(row, "currency").upper()
    if not is_currency_code(currency):
        warnings.append(f'{label}: Invalid currency "{currency}", skipping')
        return None

    date_str = _cell(row, "date")
    if not date_str:
        warnings.append(f"{label}: Missing date, skipping")
        return None
    try:
        txn_date = parse_date_only(date_str)
    except ValueError:
        warnings.append(f'{label}: Invalid date "{date_str}", skipping')
        return None

    rate_str = _cell(row, "exchangerate")
    usd_str = _cell(row, "amountinusd")
    if currency == base_currency:
        exchange_rate = Decimal(1)
        amount_in_usd = amount
    elif rate_str:
        rate = parse_decimal(rate_str)
        if rate is None or rate <= 0:
            warnings.append(f'{label}: Invalid exchange rate "{rate_str}", skipping')
            return None
        exchange_rate = rate
        amount_in_usd = amount / rate
    elif usd_str:
        usd = parse_decimal(usd_str)
        if usd is None or usd <= 0:
            warnings.append(f'{label}: Invalid USD amount "{usd_str}", skipping')
            return None
        amount_in_usd = usd
        exchange_rate = amount / usd
    else:
        warnings.append(
            f"{label}: Missing exchange rate or USD amount for {currency}, skipping"
        )
        return None

    return ParsedTransaction(
        title=title,
        amount=amount,
        currency=currency,
        exchange_rate=exchange_rate,
        amount_in_usd=amount_in_usd,
        date=txn_date,
        location=_cell(row, "location"),
        description=_cell(row, "description"),
        category=_cell(row, "category"),
        pricing_source=_cell(row, "pricingsource") or "IMPORT",
    )


def parse_spreadsheet(
    file_content: bytes,
    filename: str,
    file_type: str,
    base_currency: str = "USD",
) -> ParseResult:
    """Turn an uploaded CSV or .xlsx file into transaction candidates.

    Bad rows are skipped with a warning; the file as a whole only fails when
    it cannot be read or when no row survives validation.
    """
    warnings: list[str] = []
    if is_workbook(filename, file_type):
        csv_text, sheet_warnings = workbook_to_csv(file_content)
        warnings.extend(sheet_warnings)
    else:
        csv_text = file_content.decode("utf-8-sig", errors="replace")

    df = _read_rows(csv_text)

    transactions: list[ParsedTransaction] = []
    for i, (_, row) in enumerate(df.iterrows()):
        txn = _parse_row(i, row, base_currency.upper(), warnings)
        if txn is not None:
            transactions.append(txn)

    if not transactions:
        context = f"Warnings: {'; '.join(warnings[:3])}" if warnings else ""
        raise ImportParseError(f"No valid transactions found in CSV. {context}".strip())

    logger.info(
        "Parsed %d of %d rows from %s (%d warnings)",
        len(transactions),
        len(df),
        filename,
        len(warnings),
    )
    return ParseResult(transactions=transactions, warnings=warnings)


class SpreadsheetParser(FileParserPlugin):
    name = ImportKind.SPREADSHEET.value
    supported_extensions = [".csv", ".xlsx"]
    supported_media_types = ["text/csv", XLSX_MEDIA_TYPE]

    async def parse(
        self,
        file_content: bytes,
        filename: str,
        file_type: str,
        config: Settings,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        # CPU bound; keep the event loop free for other jobs
        return await asyncio.to_thread(
            parse_spreadsheet, file_content, filename, file_type, config.BASE_CURRENCY
        )


def register_plugin() -> None:
    registry.register("parser", SpreadsheetParser())
