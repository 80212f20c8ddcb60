"""Read MLS export files and write enriched result workbooks."""

import csv
import io
from datetime import date, datetime, time
from pathlib import Path

import openpyxl
import structlog
from openpyxl.styles import Font

from mls_geo.errors import SpreadsheetError
from mls_geo.pipeline.types import InputRecord, ProcessedResult

logger = structlog.get_logger()

RESULTS_SHEET = "MLS Processed Results"
PARTIAL_SHEET = "Partial Results"

OUTPUT_COLUMNS = [
    "ML#",
    "Address",
    "Zip Code",
    "City",
    "County",
    "House Number",
    "Latitude",
    "Longitude",
    "Neighborhood",
    "Neighborhood Source",
    "Community",
    "Community Source",
    "Status",
    "API Source",
]

NOT_AVAILABLE = "N/A"


def _scalar(value):
    """Coerce a cell value to a JSON-friendly scalar."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _read_xlsx(path: Path) -> tuple[list[str], list[InputRecord]]:
    try:
        workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception as e:
        raise SpreadsheetError(f"Failed to load workbook {path.name}: {e}") from e

    try:
        sheet = workbook.active
        rows = sheet.iter_rows(values_only=True)
        header_row = next(rows, None)
        if header_row is None:
            return [], []

        headers = [
            str(h).strip() if h is not None and str(h).strip() else f"Column {i + 1}"
            for i, h in enumerate(header_row)
        ]
        records: list[InputRecord] = []
        for row in rows:
            if not any(v is not None and str(v).strip() for v in row):
                continue
            # Short rows keep every header; missing cells are None
            values = list(row) + [None] * (len(headers) - len(row))
            records.append({h: _scalar(v) for h, v in zip(headers, values)})
        return headers, records
    finally:
        workbook.close()


def _read_csv(path: Path) -> tuple[list[str], list[InputRecord]]:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise SpreadsheetError(f"Failed to read CSV {path.name}: {e}") from e

    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in (reader.fieldnames or [])]
    records: list[InputRecord] = []
    for row in reader:
        values = [row.get(h) for h in (reader.fieldnames or [])]
        if not any(v and v.strip() for v in values if isinstance(v, str)):
            continue
        records.append({h: (v or None) for h, v in zip(headers, values)})
    return headers, records


def read_spreadsheet(path: str | Path) -> tuple[list[str], list[InputRecord]]:
    """
    Load the first sheet of an .xlsx file (or a .csv) as header names plus rows.

    Fully empty rows are skipped; empty cells are kept as None so every
    record carries every header.
    """
    path = Path(path)
    if not path.exists():
        raise SpreadsheetError(f"File not found: {path}")

    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xlsm"):
        headers, records = _read_xlsx(path)
    elif suffix == ".csv":
        headers, records = _read_csv(path)
    else:
        raise SpreadsheetError(f"Unsupported file type: {suffix or path.name}")

    logger.info("Spreadsheet loaded", file=path.name, columns=len(headers), records=len(records))
    return headers, records


def result_row(result: ProcessedResult) -> list:
    return [
        result.listing_id or NOT_AVAILABLE,
        result.address,
        result.zip,
        result.city,
        result.county,
        result.house_number or NOT_AVAILABLE,
        result.latitude,
        result.longitude,
        result.neighborhood or NOT_AVAILABLE,
        result.neighborhood_source or NOT_AVAILABLE,
        result.community or NOT_AVAILABLE,
        result.community_source or NOT_AVAILABLE,
        result.status,
        result.provider or NOT_AVAILABLE,
    ]


def build_workbook(results: list[ProcessedResult], sheet_name: str = RESULTS_SHEET) -> openpyxl.Workbook:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = sheet_name
    sheet.append(OUTPUT_COLUMNS)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for result in results:
        sheet.append(result_row(result))
    sheet.freeze_panes = "A2"
    return workbook


def render_workbook(results: list[ProcessedResult], sheet_name: str = RESULTS_SHEET) -> bytes:
    buffer = io.BytesIO()
    build_workbook(results, sheet_name).save(buffer)
    return buffer.getvalue()


def write_results(
    results: list[ProcessedResult],
    path: str | Path,
    sheet_name: str = RESULTS_SHEET,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    build_workbook(results, sheet_name).save(path)
    logger.info("Results workbook written", path=str(path), rows=len(results), sheet=sheet_name)
    return path


def processed_filename(original_filename: str, partial: bool = False) -> str:
    """"listings.xlsx" -> "listings_processed.xlsx" (or "_partial")."""
    stem = Path(original_filename or "mls").stem
    return f"{stem}_{'partial' if partial else 'processed'}.xlsx"
