from __future__ import annotations

import asyncio
import io
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest
from openpyxl import Workbook

from retrospend.config import Settings
from retrospend.exceptions import ImportParseError
from retrospend.plugins.parsers.statement import StatementParser, iter_events
from retrospend.services.exchange_rates import RateQuote


CONFIG = Settings(_env_file=None, BASE_CURRENCY="USD")


def _ndjson(*events: dict) -> bytes:
    return "".join(json.dumps(e, ensure_ascii=False) + "\n" for e in events).encode()


def _split(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


def _streaming_response(chunks: list[bytes], status_code: int = 200) -> httpx.Response:
    async def body():
        for chunk in chunks:
            await asyncio.sleep(0)
            yield chunk

    return httpx.Response(status_code, content=body())


def _xlsx() -> bytes:
    wb = Workbook()
    wb.active.title = "Statement"
    wb.active.append(["Rent", 900])
    wb.create_sheet("Extra").append(["x"])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _parser(handler, **kwargs) -> StatementParser:
    return StatementParser(
        base_url="http://importer.test",
        api_key="worker-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_iter_events_reassembles_split_lines():
    data = _ndjson({"type": "warning", "message": "Café receipt unreadable"}) + b'{"type": "progress"}'

    async def chunks():
        for chunk in _split(data, 3):
            yield chunk

    events = [event async for event in iter_events(chunks())]
    # Trailing JSON without a newline is still decoded once the stream ends
    assert events == [
        {"type": "warning", "message": "Café receipt unreadable"},
        {"type": "progress"},
    ]


async def test_iter_events_skips_garbage_lines():
    async def chunks():
        yield b'not json\n\n[1, 2]\n{"type": "result", "data": []}\n'

    events = [event async for event in iter_events(chunks())]
    assert events == [{"type": "result", "data": []}]


async def test_streams_progress_warnings_and_result():
    seen_requests: list[httpx.Request] = []
    payload = _ndjson(
        {"type": "progress", "percent": 25, "message": "Reading pages"},
        {"type": "warning", "message": "Page 3 was blank"},
        {"type": "progress", "percent": 80, "message": "Extracting transactions"},
        {
            "type": "result",
            "data": [
                {"title": "Café Central", "amount": 12.5, "currency": "usd", "date": "2024-03-02"},
                {"title": "Hotel", "amount": 200, "currency": "EUR", "date": "2024-03-03", "exchangeRate": 2},
                {"title": "", "amount": 5, "currency": "USD", "date": "2024-03-04"},
            ],
        },
    )

    async def handler(request: httpx.Request) -> httpx.Response:
        seen_requests.append(request)
        return _streaming_response(_split(payload, 7))

    progress: list[tuple[float, str]] = []

    async def on_progress(percent: float, message: str) -> None:
        progress.append((percent, message))

    result = await _parser(handler).parse(b"%PDF-1.4", "march.pdf", "application/pdf", CONFIG, on_progress)

    request = seen_requests[0]
    assert request.url.path == "/process"
    assert request.headers["Authorization"] == "Bearer worker-key"
    assert b'filename="march.pdf"' in request.content
    assert b"application/pdf" in request.content

    assert progress == [(0.25, "Reading pages"), (0.8, "Extracting transactions")]
    assert [t.title for t in result.transactions] == ["Café Central", "Hotel"]
    cafe, hotel = result.transactions
    assert cafe.currency == "USD"
    assert cafe.exchange_rate == Decimal(1)
    assert hotel.amount_in_usd == Decimal(100)
    assert hotel.date == date(2024, 3, 3)
    assert result.warnings == [
        "Page 3 was blank",
        "Transaction 3: Missing title or amount, skipping",
    ]


async def test_workbook_is_sent_as_csv():
    seen: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return _streaming_response(
            [_ndjson({"type": "result", "data": [{"title": "Rent", "amount": 900, "currency": "USD", "date": "2024-01-01"}]})]
        )

    content = _xlsx()
    result = await _parser(handler).parse(content, "bank.xlsx", "application/octet-stream", CONFIG)

    assert b'filename="bank.csv"' in seen[0]
    assert b"text/csv" in seen[0]
    assert b"Rent,900" in seen[0]
    assert result.warnings == [
        'Excel file contains 2 sheets. Only the first sheet "Statement" will be processed.'
    ]


async def test_error_event_fails_the_parse():
    async def handler(request: httpx.Request) -> httpx.Response:
        return _streaming_response(
            [_ndjson({"type": "progress", "percent": 10}, {"type": "error", "message": "Unsupported bank layout"})]
        )

    with pytest.raises(ImportParseError, match="Unsupported bank layout"):
        await _parser(handler).parse(b"%PDF", "s.pdf", "application/pdf", CONFIG)


async def test_non_200_response_includes_status_and_body():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream unavailable")

    with pytest.raises(ImportParseError) as exc_info:
        await _parser(handler).parse(b"%PDF", "s.pdf", "application/pdf", CONFIG)
    assert str(exc_info.value) == "Importer service error [502]: upstream unavailable"


async def test_overall_timeout():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200)

    parser = _parser(handler, timeout_seconds=0.05)
    with pytest.raises(ImportParseError) as exc_info:
        await parser.parse(b"%PDF", "huge.pdf", "application/pdf", CONFIG)
    assert str(exc_info.value) == (
        "Bank statement processing timed out (0.05 seconds). The file may be too large."
    )


async def test_no_transactions_extracted():
    async def handler(request: httpx.Request) -> httpx.Response:
        return _streaming_response([_ndjson({"type": "result", "data": []})])

    with pytest.raises(ImportParseError, match="No transactions extracted from statement"):
        await _parser(handler).parse(b"%PDF", "s.pdf", "application/pdf", CONFIG)


async def test_not_configured():
    unconfigured = Settings(_env_file=None, IMPORTER_URL="", WORKER_API_KEY="")

    with pytest.raises(ImportParseError, match="not configured on this instance"):
        await StatementParser().parse(b"%PDF", "s.pdf", "application/pdf", unconfigured)

    with pytest.raises(ImportParseError, match="Importer authentication is not configured"):
        parser = StatementParser(base_url="http://importer.test")
        await parser.parse(b"%PDF", "s.pdf", "application/pdf", unconfigured)


async def test_rate_resolver_fills_missing_rates():
    lookups: list[tuple[str, date]] = []

    async def resolver(currency: str, on: date) -> RateQuote | None:
        lookups.append((currency, on))
        if currency == "GBP":
            return RateQuote(rate=Decimal("0.8"), kind="CACHED")
        return None

    async def handler(request: httpx.Request) -> httpx.Response:
        return _streaming_response(
            [
                _ndjson(
                    {
                        "type": "result",
                        "data": [
                            {"title": "Pub", "amount": 40, "currency": "GBP", "date": "2024-05-01"},
                            {"title": "Ramen", "amount": 1500, "currency": "JPY", "date": "2024-05-02"},
                        ],
                    }
                )
            ]
        )

    result = await _parser(handler, rate_resolver=resolver).parse(b"%PDF", "s.pdf", "application/pdf", CONFIG)

    assert lookups == [("GBP", date(2024, 5, 1)), ("JPY", date(2024, 5, 2))]
    (pub,) = result.transactions
    assert pub.amount_in_usd == Decimal(50)
    assert pub.pricing_source == "CACHED"
    assert result.warnings == [
        "Transaction 2: No exchange rate available for JPY on 2024-05-02, skipping"
    ]


async def test_base_currency_comes_from_the_given_settings():
    async def handler(request: httpx.Request) -> httpx.Response:
        return _streaming_response(
            [
                _ndjson(
                    {
                        "type": "result",
                        "data": [{"title": "Bakery", "amount": 3, "currency": "EUR", "date": "2024-01-02"}],
                    }
                )
            ]
        )

    euro = Settings(_env_file=None, BASE_CURRENCY="EUR")
    result = await _parser(handler).parse(b"%PDF", "s.pdf", "application/pdf", euro)

    (bakery,) = result.transactions
    assert bakery.exchange_rate == Decimal(1)
    assert bakery.amount_in_usd == Decimal(3)
