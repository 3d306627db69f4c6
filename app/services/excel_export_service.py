"""
app/services/excel_export_service.py

Excel workbook export for scraped business records.

Layout
------
    All Businesses  one sheet with every record, sorted by carrier priority
    <carrier>       one sheet per carrier present (by_carrier=True only)
    Summary         record counts per carrier plus session totals

Every data sheet shares the same columns, a styled frozen header, an
autofilter, alternating row fill and clickable map links.
"""

from __future__ import annotations

import io
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from app.scraper.carriers import carrier_priority
from app.scraper.types import CARRIER_UNKNOWN, CARRIER_UNRESOLVED, BusinessRecord

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_HEADER_FILL = PatternFill(fill_type="solid", start_color="FF4472C4", end_color="FF4472C4")
_HEADER_FONT = Font(bold=True, color="FFFFFFFF")
_STRIPE_FILL = PatternFill(fill_type="solid", start_color="FFF2F2F2", end_color="FFF2F2F2")
_LINK_FONT = Font(color="FF0000FF", underline="single")
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")
_MAX_SHEET_TITLE = 31

_SUMMARY_FIELDS: tuple[tuple[str, str], ...] = (
    ("Towns total", "towns_total"),
    ("Towns completed", "towns_completed"),
    ("Towns failed", "towns_failed"),
    ("Industry failures", "industry_failures"),
    ("Lookup failures", "lookup_failures"),
    ("Businesses per town", "businesses_per_town"),
    ("Duration (s)", "duration_seconds"),
)


@dataclass(frozen=True)
class ExportColumn:
    header: str
    width: int


_COLUMNS: tuple[ExportColumn, ...] = (
    ExportColumn("Maps URL", 50),
    ExportColumn("Name", 30),
    ExportColumn("Phone", 15),
    ExportColumn("Carrier", 20),
    ExportColumn("Address", 40),
    ExportColumn("Industry", 25),
    ExportColumn("Town", 20),
)


def carrier_label(carrier: str | None) -> str:
    if not carrier or carrier == CARRIER_UNKNOWN:
        return "Unknown"
    if carrier == CARRIER_UNRESOLVED:
        return "Unresolved"
    return carrier


def sort_by_carrier(records: Iterable[BusinessRecord]) -> list[BusinessRecord]:
    """Stable sort: carrier priority first, input order within a carrier."""
    return sorted(records, key=lambda record: carrier_priority(record.carrier))


def _sheet_title(label: str, taken: set[str]) -> str:
    base = _INVALID_SHEET_CHARS.sub("-", label).strip() or "Sheet"
    base = base[:_MAX_SHEET_TITLE]
    title = base
    suffix = 2
    while title.lower() in taken:
        tail = f" ({suffix})"
        title = f"{base[:_MAX_SHEET_TITLE - len(tail)]}{tail}"
        suffix += 1
    taken.add(title.lower())
    return title


def _style_header(sheet: Worksheet, columns: Sequence[ExportColumn]) -> None:
    for index, column in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=index, value=column.header)
        cell.fill = _HEADER_FILL
        cell.font = _HEADER_FONT
        sheet.column_dimensions[get_column_letter(index)].width = column.width
    sheet.freeze_panes = "A2"


def _write_records(sheet: Worksheet, records: Sequence[BusinessRecord]) -> None:
    _style_header(sheet, _COLUMNS)
    for offset, record in enumerate(records):
        row_number = offset + 2
        values: list[Any] = [
            record.maps_url,
            record.name,
            record.phone or "N/A",
            carrier_label(record.carrier),
            record.address,
            record.industry,
            record.town,
        ]
        for column_index, value in enumerate(values, start=1):
            cell = sheet.cell(row=row_number, column=column_index, value=value)
            if offset % 2 == 1:
                cell.fill = _STRIPE_FILL
        if record.maps_url:
            link_cell = sheet.cell(row=row_number, column=1)
            link_cell.hyperlink = record.maps_url
            link_cell.font = _LINK_FONT

    last_column = get_column_letter(len(_COLUMNS))
    sheet.auto_filter.ref = f"A1:{last_column}{len(records) + 1}"


def _write_summary(
    sheet: Worksheet,
    counts: Sequence[tuple[str, int]],
    *,
    session_name: str | None,
    total: int,
    session_summary: Mapping[str, Any] | None,
) -> None:
    summary_columns = (ExportColumn("Carrier", 20), ExportColumn("Count", 15))
    _style_header(sheet, summary_columns)
    row_number = 2
    for label, count in counts:
        sheet.cell(row=row_number, column=1, value=label)
        sheet.cell(row=row_number, column=2, value=count)
        row_number += 1

    total_label = sheet.cell(row=row_number, column=1, value="Total")
    total_label.font = Font(bold=True)
    total_value = sheet.cell(row=row_number, column=2, value=total)
    total_value.font = Font(bold=True)
    row_number += 2
    if session_name:
        sheet.cell(row=row_number, column=1, value="Session")
        sheet.cell(row=row_number, column=2, value=session_name)
        row_number += 1
    if not session_summary:
        return
    for label, key in _SUMMARY_FIELDS:
        if key in session_summary:
            sheet.cell(row=row_number, column=1, value=label)
            sheet.cell(row=row_number, column=2, value=session_summary[key])
            row_number += 1


class ExcelExportService:
    """
    Builds xlsx workbooks from business records. Stateless.
    """

    def build_workbook(
        self,
        records: Sequence[BusinessRecord],
        *,
        session_name: str | None = None,
        by_carrier: bool = True,
        session_summary: Mapping[str, Any] | None = None,
    ) -> Workbook:
        ordered = sort_by_carrier(records)
        workbook = Workbook()
        taken: set[str] = set()

        all_sheet = workbook.active
        all_sheet.title = _sheet_title("All Businesses", taken)
        _write_records(all_sheet, ordered)

        grouped: dict[str, list[BusinessRecord]] = {}
        for record in ordered:
            grouped.setdefault(carrier_label(record.carrier), []).append(record)

        if by_carrier:
            for label, group in grouped.items():
                sheet = workbook.create_sheet(_sheet_title(label, taken))
                _write_records(sheet, group)

        counts = Counter(carrier_label(record.carrier) for record in ordered)
        summary_rows = [(label, counts[label]) for label in grouped]
        _write_summary(
            workbook.create_sheet(_sheet_title("Summary", taken)),
            summary_rows,
            session_name=session_name,
            total=len(ordered),
            session_summary=session_summary,
        )
        return workbook

    def export_bytes(
        self,
        records: Sequence[BusinessRecord],
        *,
        session_name: str | None = None,
        by_carrier: bool = True,
        session_summary: Mapping[str, Any] | None = None,
    ) -> bytes:
        workbook = self.build_workbook(
            records,
            session_name=session_name,
            by_carrier=by_carrier,
            session_summary=session_summary,
        )
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()


def export_filename(session_name: str | None, session_id: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", (session_name or "").strip()).strip("_")
    return f"{stem or 'scrape'}_{session_id[:8]}.xlsx"
