from __future__ import annotations

import io
from datetime import date
from decimal import Decimal

import pytest
from openpyxl import Workbook

from retrospend.config import Settings
from retrospend.exceptions import ImportParseError
from retrospend.plugins.parsers.spreadsheet import SpreadsheetParser, parse_spreadsheet
from retrospend.plugins.workbook import XLSX_MEDIA_TYPE
from retrospend.services.exchange_rates import is_currency_code


def _csv(*rows: str, header: str = "title,amount,currency,date") -> bytes:
    return ("\n".join([header, *rows]) + "\n").encode()


def _xlsx(sheets: dict[str, list[list[object]]]) -> bytes:
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_bad_rows_become_warnings():
    rows = [f"Item {i},{i + 1}.00,USD,2024-01-{i + 10:02d}" for i in range(7)]
    rows += ["Bad one,abc,USD,2024-01-20", "Bad two,-5,USD,2024-01-21", "Bad three,0,USD,2024-01-22"]

    result = parse_spreadsheet(_csv(*rows), "expenses.csv", "text/csv")

    assert len(result.transactions) == 7
    assert len(result.warnings) == 3
    assert result.warnings[0] == 'Row 8: Invalid amount "abc", skipping'
    assert result.warnings[2].startswith("Row 10:")


def test_all_rows_invalid_raises_with_first_warnings():
    content = _csv(
        ",1.00,USD,2024-01-01",
        "Lunch,,USD,2024-01-01",
        "Dinner,3.00,USD,01/02/2024",
        "Taxi,4.00,US,2024-01-02",
    )
    with pytest.raises(ImportParseError) as exc_info:
        parse_spreadsheet(content, "bad.csv", "text/csv")

    message = str(exc_info.value)
    assert message.startswith("No valid transactions found in CSV. Warnings: ")
    assert "Row 1: Missing title, skipping" in message
    assert "Row 2: Missing amount, skipping" in message
    assert 'Row 3: Invalid date "01/02/2024", skipping' in message
    # Only the first three warnings are carried in the message
    assert "Row 4" not in message


def test_missing_required_columns():
    with pytest.raises(ImportParseError, match="Missing required columns: currency, date"):
        parse_spreadsheet(b"title,amount\nCoffee,4.50\n", "short.csv", "text/csv")


def test_header_only_file_is_empty():
    with pytest.raises(ImportParseError, match="CSV file is empty"):
        parse_spreadsheet(b"title,amount,currency,date\n", "empty.csv", "text/csv")


def test_headers_are_case_insensitive_and_bom_is_ignored():
    content = "\ufeffTitle,Amount,Currency,Date,Location\nCoffee,4.50,usd,2024-01-15,Cafe\n".encode()

    result = parse_spreadsheet(content, "caps.csv", "text/csv")

    txn = result.transactions[0]
    assert txn.title == "Coffee"
    assert txn.currency == "USD"
    assert txn.location == "Cafe"
    assert txn.exchange_rate == Decimal(1)
    assert txn.amount_in_usd == Decimal("4.50")
    assert txn.pricing_source == "IMPORT"


def test_foreign_currency_rate_and_usd_derivation():
    content = (
        b"title,amount,currency,date,exchangeRate,amountInUSD\n"
        b"Hotel,200.00,EUR,2024-02-01,2,\n"
        b"Train,50.00,EUR,2024-02-02,,25\n"
        b"Museum,30.00,EUR,2024-02-03,,\n"
    )

    result = parse_spreadsheet(content, "trip.csv", "text/csv")

    hotel, train = result.transactions
    assert hotel.amount_in_usd == Decimal(100)
    assert train.exchange_rate == Decimal(2)
    assert result.warnings == ["Row 3: Missing exchange rate or USD amount for EUR, skipping"]


def test_midnight_timestamp_dates_are_accepted():
    result = parse_spreadsheet(_csv("Coffee,4.50,USD,2024-01-15 00:00:00"), "ts.csv", "text/csv")
    assert result.transactions[0].date == date(2024, 1, 15)


def test_xlsx_uses_first_sheet_and_warns_about_others():
    content = _xlsx(
        {
            "January": [
                ["title", "amount", "currency", "date"],
                ["Rent", 1200, "USD", "2024-01-01"],
                [None, None, None, None],
                ["Power", 80.5, "USD", "2024-01-05"],
            ],
            "Notes": [["ignored"]],
        }
    )

    result = parse_spreadsheet(content, "budget.xlsx", XLSX_MEDIA_TYPE)

    assert [t.title for t in result.transactions] == ["Rent", "Power"]
    assert result.transactions[1].amount == Decimal("80.5")
    assert result.warnings == [
        'Excel file contains 2 sheets. Only the first sheet "January" will be imported.'
    ]


def test_xlsx_empty_sheet():
    content = _xlsx({"Sheet1": []})
    with pytest.raises(ImportParseError, match="Excel sheet is empty"):
        parse_spreadsheet(content, "blank.xlsx", XLSX_MEDIA_TYPE)


def test_xlsx_unreadable():
    with pytest.raises(ImportParseError, match="Failed to process Excel file"):
        parse_spreadsheet(b"not a workbook", "broken.xlsx", XLSX_MEDIA_TYPE)


async def test_parser_plugin_detects_extensions_and_parses():
    parser = SpreadsheetParser()
    assert parser.detect(b"", "export.CSV")
    assert parser.detect(b"", "export.xlsx")
    assert not parser.detect(b"", "statement.pdf")
    # Uploads without an extension are recognised by their declared type
    assert parser.detect(b"", "export", XLSX_MEDIA_TYPE)
    assert parser.detect(b"", "export", "text/csv; charset=utf-8")
    assert not parser.detect(b"", "export", "application/pdf")

    config = Settings(_env_file=None, BASE_CURRENCY="USD")
    result = await parser.parse(_csv("Coffee,4.50,USD,2024-01-15"), "export.csv", "text/csv", config)
    assert len(result.transactions) == 1


def test_non_ascii_currency_codes_are_rejected():
    assert is_currency_code("EUR")
    assert not is_currency_code("ÉUR")

    result = parse_spreadsheet(
        _csv("Coffee,4.50,USD,2024-01-15", "Croissant,2.00,ÉUR,2024-01-16"), "mixed.csv", "text/csv"
    )
    assert [t.title for t in result.transactions] == ["Coffee"]
    assert result.warnings == ['Row 2: Invalid currency "ÉUR", skipping']


def test_base_currency_rows_need_no_rate():
    result = parse_spreadsheet(
        _csv("Bread,3.00,EUR,2024-01-02"), "euro.csv", "text/csv", base_currency="EUR"
    )
    (bread,) = result.transactions
    assert bread.exchange_rate == Decimal(1)
    assert bread.amount_in_usd == Decimal("3.00")
