from __future__ import annotations

import io

import pandas as pd

from retrospend.exceptions import ImportParseError

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def is_workbook(filename: str, file_type: str) -> bool:
    return filename.lower().endswith(".xlsx") or file_type == XLSX_MEDIA_TYPE


def workbook_to_csv(file_content: bytes, verb: str = "imported") -> tuple[str, list[str]]:
    """Convert the first sheet of an .xlsx workbook to CSV text.

    Returns the CSV text and any warnings about ignored sheets. A workbook
    without sheets, or whose first sheet is empty, raises ``ImportParseError``.
    """
    warnings: list[str] = []
    try:
        with pd.ExcelFile(io.BytesIO(file_content), engine="openpyxl") as workbook:
            sheet_names = workbook.sheet_names
            if not sheet_names:
                raise ValueError("Excel file contains no sheets")

            first_sheet = sheet_names[0]
            if len(sheet_names) > 1:
                warnings.append(
                    f"Excel file contains {len(sheet_names)} sheets. "
                    f'Only the first sheet "{first_sheet}" will be {verb}.'
                )

            frame = workbook.parse(first_sheet, header=None)
    except Exception as exc:
        raise ImportParseError(f"Failed to process Excel file: {exc}") from exc

    frame = frame.dropna(how="all").fillna("")
    if frame.empty:
        raise ImportParseError("Failed to process Excel file: Excel sheet is empty")

    return frame.to_csv(index=False, header=False), warnings
