from __future__ import annotations

import csv
import io
import logging
import math
import re
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from sleuth.models import Company, CompanyStatus
from sleuth.schemas import ImportResult

log = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10

CSV_COLUMNS = (
    "company_name", "address", "phone", "website", "category",
    "rating", "reviews_count", "place_id",
)

CSV_TEMPLATE = (
    ",".join(CSV_COLUMNS) + "\n"
    'Example Company Inc,"123 Main St, City, State 12345",+1-555-123-4567,'
    "https://example.com,Business Services,4.5,127,ChIJ...\n"
)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _f(value: object) -> float | None:
    text = _s(value)
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _i(value: object) -> int | None:
    text = _s(value)
    if not text:
        return None
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return None


def normalize_header(name: object) -> str:
    return re.sub(r"\s+", "_", _s(name).lower())


def dedup_key(company_name: str, address: str, phone: str) -> str:
    return f"{company_name.lower()}|{address.lower()}|{phone}"


def _row_to_fields(row: dict[str, object]) -> dict[str, object] | None:
    name = _s(row.get("company_name"))
    if not name:
        return None
    return {
        "company_name": name,
        "address": _s(row.get("address")),
        "phone": _s(row.get("phone")),
        "website": _s(row.get("website")),
        "category": _s(row.get("category")),
        "rating": _f(row.get("rating")),
        "reviews_count": _i(row.get("reviews_count")),
        "place_id": _s(row.get("place_id")),
    }


def import_rows(rows: list[dict[str, object]], session: Session) -> ImportResult:
    """Validate, de-duplicate and insert company rows (header keys already normalised)."""
    valid: list[dict[str, object]] = []
    error_rows: list[dict[str, object]] = []
    for i, row in enumerate(rows, start=1):
        fields = _row_to_fields(row)
        if fields is None:
            error_rows.append({"row": i, "error": "Invalid row data: company_name is required",
                               "details": {k: _s(v) for k, v in row.items()}})
            continue
        valid.append(fields)

    seen: set[str] = set()
    deduped: list[dict[str, object]] = []
    for fields in valid:
        key = dedup_key(fields["company_name"], fields["address"], fields["phone"])  # type: ignore[arg-type]
        if key not in seen:
            seen.add(key)
            deduped.append(fields)

    names = list({f["company_name"] for f in deduped})
    existing = session.execute(
        select(Company.company_name, Company.address, Company.phone).where(Company.company_name.in_(names))
    ).all() if names else []
    existing_keys = {dedup_key(n, a or "", p or "") for n, a, p in existing}

    created = 0
    for fields in deduped:
        key = dedup_key(fields["company_name"], fields["address"], fields["phone"])  # type: ignore[arg-type]
        if key in existing_keys:
            continue
        session.add(Company(**fields, status=CompanyStatus.PENDING))
        created += 1
    session.commit()

    result = ImportResult(
        total_rows=len(rows),
        valid_rows=len(valid),
        duplicates_removed=len(valid) - len(deduped),
        already_exists=len(deduped) - created,
        companies_created=created,
        errors=len(error_rows),
        error_rows=error_rows[:MAX_REPORTED_ERRORS],
    )
    log.info(
        "Company import: %d rows, %d valid, %d duplicates, %d existing, %d created",
        result.total_rows, result.valid_rows, result.duplicates_removed,
        result.already_exists, result.companies_created,
    )
    return result


def decode_csv(content: bytes) -> str:
    """UTF-8 (with or without BOM), else Windows-1252 as spreadsheet tools export it."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        log.warning("CSV upload is not valid UTF-8; decoding as Windows-1252")
        return content.decode("cp1252", errors="replace")


def import_csv(content: str | bytes, session: Session) -> ImportResult:
    if isinstance(content, bytes):
        content = decode_csv(content)
    reader = csv.DictReader(io.StringIO(content))
    reader.fieldnames = [normalize_header(h) for h in (reader.fieldnames or [])]
    rows = [
        {k: v for k, v in row.items() if k}
        for row in reader
        if any(_s(v) for v in row.values() if not isinstance(v, list))
    ]
    return import_rows(rows, session)


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import companies from the first sheet of a workbook, header row first."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        sheet_rows = ws.iter_rows(values_only=True)
        header = next(sheet_rows, None)
        if header is None:
            return import_rows([], session)
        keys = [normalize_header(h) for h in header]
        rows = []
        for values in sheet_rows:
            if not any(_s(v) for v in values):
                continue
            rows.append({k: v for k, v in zip(keys, values) if k})
    finally:
        wb.close()
    return import_rows(rows, session)
