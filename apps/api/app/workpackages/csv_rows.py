from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.core.config import get_settings
from app.workpackages.errors import ValidationError, pydantic_error_details
from app.workpackages.schemas import CsvRow


# Header keys compared lowercased with spaces, underscores and dashes removed.
_HEADER_ALIASES: dict[str, str] = {
    "phasename": "phaseName",
    "phaseposition": "phasePosition",
    "phasedescription": "phaseDescription",
    "deliverabletype": "deliverableType",
    "deliverablelabel": "deliverableLabel",
    "deliverabledescription": "deliverableDescription",
    "quantity": "quantity",
    "unitofmeasure": "unitOfMeasure",
    "estimatedhourseach": "estimatedHoursEach",
    "status": "status",
    "proposaldescription": "proposalDescription",
    "proposaltotalcost": "proposalTotalCost",
}


def _header_key(raw: str) -> str:
    return "".join(ch for ch in raw.strip().lower() if ch not in {" ", "_", "-"})


def normalize_row_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Map loosely spelled headers onto row aliases and drop empty cells."""
    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        if key is None:
            continue
        alias = _HEADER_ALIASES.get(_header_key(str(key)))
        if alias is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        if value is None:
            continue
        normalized[alias] = value
    return normalized


def read_csv_text(csv_text: str) -> list[dict[str, Any]]:
    text = csv_text.lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("CSV has no header row")
    rows = [row for row in reader if any((value or "").strip() for value in row.values() if isinstance(value, str))]
    return rows


def parse_rows(
    rows: Iterable[Mapping[str, Any]] | None = None,
    csv_text: str | None = None,
    *,
    max_rows: int | None = None,
) -> list[CsvRow]:
    """Validate every row up front; the first bad row aborts with its index."""
    raw_rows: list[Mapping[str, Any]] = list(rows) if rows else []
    if csv_text:
        raw_rows.extend(read_csv_text(csv_text))
    if not raw_rows:
        raise ValidationError("CSV contains no data rows")

    limit = max_rows if max_rows is not None else get_settings().workpackage_csv_max_rows
    if len(raw_rows) > limit:
        raise ValidationError(
            f"CSV has {len(raw_rows)} rows, limit is {limit}",
            details={"row_count": len(raw_rows), "max_rows": limit},
        )

    parsed: list[CsvRow] = []
    for index, raw in enumerate(raw_rows):
        if not isinstance(raw, Mapping):
            raise ValidationError("row must be an object", row_index=index)
        try:
            row = CsvRow.model_validate(normalize_row_keys(raw))
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid CSV row",
                row_index=index,
                details={"errors": pydantic_error_details(exc)},
            ) from exc
        parsed.append(row)
    return parsed
