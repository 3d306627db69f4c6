"""
app/services/excel_import_service.py

Reads business rows from an uploaded xlsx workbook so their carriers can be
looked up outside a scrape session.

Columns are matched on the first sheet's header row by keyword:

    name      "name", "business"
    phone     "phone", "tel", "mobile"
    address   "address"
    town      "town", "city"
    industry  "industry", "type", "category"
    maps_url  "url", "website", "maps"

Name and phone columns are required. Rows without a name are skipped.
"""

from __future__ import annotations

import io
import logging
import zipfile
from typing import Any, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from app.scraper.errors import WorkbookFormatError
from app.scraper.logging_utils import log_event
from app.scraper.types import BusinessRecord

logger = logging.getLogger(__name__)

MAX_UPLOAD_ROWS = 5000
UNSPECIFIED = "Unspecified"

_HEADER_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("name", ("name", "business")),
    ("phone", ("phone", "tel", "mobile")),
    ("address", ("address",)),
    ("town", ("town", "city")),
    ("industry", ("industry", "type", "category")),
    ("maps_url", ("url", "website", "maps")),
)
_REQUIRED_FIELDS = ("name", "phone")


# ---------------------------------------------------------------------------
# Header + cell helpers
# ---------------------------------------------------------------------------


def map_headers(headers: Sequence[Any]) -> dict[str, int]:
    """
    Column index per field. Each header is claimed by the first field whose
    keyword it contains; the first matching column wins per field.
    """

    mapping: dict[str, int] = {}
    for index, raw in enumerate(headers):
        label = str(raw or "").strip().lower()
        if not label:
            continue
        for field_name, keywords in _HEADER_KEYWORDS:
            if any(keyword in label for keyword in keywords):
                mapping.setdefault(field_name, index)
                break
    return mapping


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return " ".join(str(value).split())


def phone_text(value: Any) -> str | None:
    # Numeric cells lose the leading zero of local numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        digits = cell_text(value)
        if len(digits) == 9:
            digits = f"0{digits}"
        return digits or None
    return cell_text(value) or None


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


def read_business_rows(payload: bytes) -> list[BusinessRecord]:
    """
    Parse the first sheet of an xlsx payload into business records.

    Raises WorkbookFormatError for unreadable files, a missing header row,
    missing name or phone columns, or more than MAX_UPLOAD_ROWS data rows.
    """

    try:
        workbook = load_workbook(io.BytesIO(payload), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as exc:
        raise WorkbookFormatError(f"The upload is not a readable xlsx workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            raise WorkbookFormatError("The workbook has no sheets.")
        rows = sheet.iter_rows(values_only=True)
        headers = next(rows, None)
        if not headers:
            raise WorkbookFormatError("The workbook has no header row.")

        columns = map_headers(headers)
        missing = [field_name for field_name in _REQUIRED_FIELDS if field_name not in columns]
        if missing:
            raise WorkbookFormatError(
                f"The header row needs {' and '.join(missing)} columns."
            )

        def value_at(row: Sequence[Any], field_name: str) -> Any:
            index = columns.get(field_name)
            if index is None or index >= len(row):
                return None
            return row[index]

        records: list[BusinessRecord] = []
        skipped = 0
        for row_number, row in enumerate(rows, start=2):
            if row_number - 1 > MAX_UPLOAD_ROWS:
                raise WorkbookFormatError(f"The workbook has more than {MAX_UPLOAD_ROWS} rows.")
            name = cell_text(value_at(row, "name"))
            if not name:
                skipped += 1
                continue
            records.append(
                BusinessRecord(
                    name=name,
                    town=cell_text(value_at(row, "town")) or UNSPECIFIED,
                    industry=cell_text(value_at(row, "industry")) or UNSPECIFIED,
                    phone=phone_text(value_at(row, "phone")),
                    address=cell_text(value_at(row, "address")),
                    maps_url=cell_text(value_at(row, "maps_url")),
                )
            )
    finally:
        workbook.close()

    log_event(
        logger,
        logging.INFO,
        "workbook_rows_read",
        rows=len(records),
        skipped=skipped,
        columns=sorted(columns),
    )
    return records
