from __future__ import annotations

import asyncio
import codecs
import json
import logging
import re
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

import httpx

from retrospend.config import Settings
from retrospend.exceptions import ImportParseError
from retrospend.models.import_job import ImportKind
from retrospend.plugins import registry
from retrospend.plugins.base import FileParserPlugin, ParseResult, ProgressCallback
from retrospend.plugins.workbook import XLSX_MEDIA_TYPE, is_workbook, workbook_to_csv
from retrospend.schemas.transaction import ParsedTransaction
from retrospend.services.exchange_rates import (
    RateResolver,
    is_currency_code,
    parse_date_only,
    parse_decimal,
)

logger = logging.getLogger(__name__)


def _describe_timeout(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


def _decode_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Failed to parse importer response line: %s", line[:200])
        return None
    if not isinstance(event, dict):
        logger.warning("Ignoring non-object importer event: %s", line[:200])
        return None
    return event


async def iter_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield NDJSON events from a byte stream that arrives in arbitrary chunks.

    Partial lines are buffered until their newline arrives; whatever is left
    when the stream closes is decoded as a final event.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            event = _decode_line(line)
            if event is not None:
                yield event

    buffer += decoder.decode(b"", final=True)
    event = _decode_line(buffer)
    if event is not None:
        yield event


class StatementParser(FileParserPlugin):
    """Delegates bank statements to the external importer service."""

    name = ImportKind.STATEMENT.value
    supported_extensions = [".pdf", ".csv", ".xlsx"]
    supported_media_types = ["application/pdf", "text/csv", XLSX_MEDIA_TYPE]

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_resolver: RateResolver | None = None,
    ) -> None:
        self._base_url = base_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._rate_resolver = rate_resolver

    async def parse(
        self,
        file_content: bytes,
        filename: str,
        file_type: str,
        config: Settings,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        base_url = self._base_url or config.IMPORTER_URL
        if not base_url:
            raise ImportParseError("Bank statement import is not configured on this instance")
        api_key = self._api_key or config.WORKER_API_KEY
        if not api_key:
            raise ImportParseError("Importer authentication is not configured")
        timeout = self._timeout_seconds or config.STATEMENT_PROCESSING_TIMEOUT_SECONDS

        warnings: list[str] = []
        upload_name = filename
        if is_workbook(filename, file_type):
            csv_text, sheet_warnings = workbook_to_csv(file_content, verb="processed")
            warnings.extend(sheet_warnings)
            file_content = csv_text.encode("utf-8")
            upload_name = re.sub(r"\.xlsx$", ".csv", filename, flags=re.IGNORECASE)
            upload_type = "text/csv"
        elif filename.lower().endswith(".pdf") or file_type == "application/pdf":
            upload_type = "application/pdf"
        else:
            upload_type = "text/csv"

        try:
            async with asyncio.timeout(timeout):
                raw_rows = await self._process(
                    base_url, api_key, upload_name, upload_type, file_content, warnings, on_progress
                )
        except TimeoutError as exc:
            raise ImportParseError(
                f"Bank statement processing timed out ({_describe_timeout(timeout)}). "
                "The file may be too large."
            ) from exc

        transactions: list[ParsedTransaction] = []
        for i, raw in enumerate(raw_rows):
            txn = await self._normalize(i, raw, config.BASE_CURRENCY.upper(), warnings)
            if txn is not None:
                transactions.append(txn)

        if not transactions:
            raise ImportParseError("No transactions extracted from statement")

        return ParseResult(transactions=transactions, warnings=warnings)

    async def _process(
        self,
        base_url: str,
        api_key: str,
        upload_name: str,
        upload_type: str,
        file_content: bytes,
        warnings: list[str],
        on_progress: ProgressCallback | None,
    ) -> list[Any]:
        rows: list[Any] = []
        # The overall deadline is enforced by the caller, not by httpx
        async with httpx.AsyncClient(
            base_url=base_url, timeout=None, transport=self._transport
        ) as client:
            async with client.stream(
                "POST",
                "/process",
                headers={"Authorization": f"Bearer {api_key}"},
                files={"file": (upload_name, file_content, upload_type)},
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ImportParseError(
                        f"Importer service error [{response.status_code}]: {body or 'Unknown error'}"
                    )

                async for event in iter_events(response.aiter_bytes()):
                    kind = event.get("type")
                    if kind == "progress":
                        percent = parse_decimal(event.get("percent")) or Decimal(0)
                        if on_progress is not None:
                            await on_progress(float(percent) / 100, str(event.get("message") or ""))
                    elif kind == "warning":
                        warnings.append(str(event.get("message") or ""))
                    elif kind == "result":
                        data = event.get("data")
                        rows = data if isinstance(data, list) else []
                    elif kind == "error":
                        raise ImportParseError(str(event.get("message") or "Importer reported an error"))
                    else:
                        logger.debug("Ignoring importer event of type %r", kind)
        return rows

    async def _normalize(
        self, index: int, raw: Any, base_currency: str, warnings: list[str]
    ) -> ParsedTransaction | None:
        label = f"Transaction {index + 1}"
        if not isinstance(raw, dict):
            warnings.append(f"{label}: Unreadable transaction, skipping")
            return None

        title = str(raw.get("title") or "").strip()
        amount = parse_decimal(raw.get("amount"))
        currency = str(raw.get("currency") or "").strip().upper()
        if not title or amount is None or amount == 0:
            warnings.append(f"{label}: Missing title or amount, skipping")
            return None
        if not is_currency_code(currency):
            warnings.append(f'{label}: Invalid currency "{currency}", skipping')
            return None
        try:
            txn_date = parse_date_only(str(raw.get("date") or ""))
        except ValueError:
            warnings.append(f'{label}: Invalid date "{raw.get("date")}", skipping')
            return None

        pricing_source = str(raw.get("pricingSource") or "").strip() or "IMPORT"
        rate = parse_decimal(raw.get("exchangeRate"))
        usd = parse_decimal(raw.get("amountInUSD"))
        if currency == base_currency:
            rate, usd = Decimal(1), amount
        elif rate is not None and rate > 0:
            if usd is None or usd == 0:
                usd = amount / rate
        elif usd is not None and usd != 0:
            rate = amount / usd
        else:
            quote = None
            if self._rate_resolver is not None:
                quote = await self._rate_resolver(currency, txn_date)
            if quote is None or quote.rate <= 0:
                warnings.append(
                    f"{label}: No exchange rate available for {currency} on {txn_date.isoformat()}, skipping"
                )
                return None
            rate, usd = quote.rate, amount / quote.rate
            pricing_source = quote.kind

        return ParsedTransaction(
            title=title,
            amount=amount,
            currency=currency,
            exchange_rate=rate,
            amount_in_usd=usd,
            date=txn_date,
            location=str(raw.get("location") or ""),
            description=str(raw.get("description") or ""),
            category=str(raw.get("category") or ""),
            pricing_source=pricing_source,
        )


def register_plugin() -> None:
    registry.register("parser", StatementParser())
