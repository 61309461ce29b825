from __future__ import annotations

import csv
import json
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

from trade_replay.errors import InvalidInputError, MalformedRowError

LAYOUT_DEALS = "deals"
LAYOUT_POSITIONS = "positions"

_DEAL_MARKERS = {"direction", "entry"}
_POSITION_MARKERS = {"time.1", "close time", "close_time", "closetime"}
_REPORT_TIME = re.compile(
    r"^(?P<year>\d{4})[.\-/](?P<month>\d{1,2})[.\-/](?P<day>\d{1,2})"
    r"(?:[ T](?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2})(?:\.(?P<fraction>\d{1,6}))?)?)?$"
)
_AMOUNT_NOISE = re.compile(r"[^\d.\-]")


@dataclass(frozen=True)
class ReportRows:
    rows: list[dict[str, Any]]
    layout: str
    source: str | None = None


def load_report(path: str | Path) -> ReportRows:
    source_path = Path(path)
    suffix = source_path.suffix.lower()
    if suffix == ".json":
        with source_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        rows = [dict(record) for record in _extract_records(payload)]
    elif suffix in {".csv", ".tsv"}:
        delimiter = "\t" if suffix == ".tsv" else ","
        with source_path.open("r", encoding="utf-8-sig", newline="") as handle:
            rows = _read_delimited(handle, delimiter)
    else:
        raise ValueError(f"Unsupported file type: {source_path.suffix}")

    if not rows:
        raise InvalidInputError("Report contains no rows", source=str(source_path))
    return ReportRows(rows=rows, layout=detect_layout(rows[0].keys()), source=str(source_path))


def detect_layout(headers: Iterable[str]) -> str:
    normalized = {str(header).strip().lower() for header in headers}
    if normalized & _DEAL_MARKERS:
        return LAYOUT_DEALS
    if normalized & _POSITION_MARKERS:
        return LAYOUT_POSITIONS
    return LAYOUT_DEALS


def parse_report_time(value: Any, *, row_index: int | None = None) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if value is None:
        raise MalformedRowError("Missing timestamp", row_index=row_index)
    text = str(value).strip()
    if not text or text in {"-", "Time"}:
        raise MalformedRowError(f"Invalid time value: {value!r}", row_index=row_index)

    match = _REPORT_TIME.match(text)
    if match:
        parts = match.groupdict()
        fraction = (parts["fraction"] or "").ljust(6, "0")
        try:
            return datetime(
                int(parts["year"]),
                int(parts["month"]),
                int(parts["day"]),
                int(parts["hour"] or 0),
                int(parts["minute"] or 0),
                int(parts["second"] or 0),
                int(fraction or 0),
            )
        except ValueError as exc:
            raise MalformedRowError(f"Invalid time value: {value!r}", row_index=row_index) from exc

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(iso_text)
    except ValueError as exc:
        raise MalformedRowError(f"Invalid time value: {value!r}", row_index=row_index) from exc
    # Keep the printed wall-clock fields; the report clock is declared separately.
    return parsed.replace(tzinfo=None)


def parse_amount(value: Any, default: float | None = 0.0, *, row_index: int | None = None) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = "" if value is None else str(value).strip()
    cleaned = _AMOUNT_NOISE.sub("", text)
    if cleaned in {"", "-", ".", "-."}:
        if default is None:
            raise MalformedRowError(f"Missing numeric field: {value!r}", row_index=row_index)
        return default
    try:
        return float(cleaned)
    except ValueError as exc:
        raise MalformedRowError(f"Invalid numeric field: {value!r}", row_index=row_index) from exc


def pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            return raw[key]
    lowered = {str(name).strip().lower(): value for name, value in raw.items()}
    for key in keys:
        value = lowered.get(key.lower())
        if value not in (None, ""):
            return value
    return None


def _read_delimited(handle: Iterable[str], delimiter: str) -> list[dict[str, Any]]:
    reader = csv.reader(handle, delimiter=delimiter)
    header: list[str] | None = None
    rows: list[dict[str, Any]] = []
    for values in reader:
        if not values or all(not cell.strip() for cell in values):
            continue
        if header is None:
            header = _dedupe_headers(values)
            continue
        rows.append({name: cell.strip() for name, cell in zip(header, values)})
    return rows


def _dedupe_headers(values: list[str]) -> list[str]:
    # Position exports repeat Time/Price for the close leg; later copies get ".N".
    seen: dict[str, int] = {}
    output: list[str] = []
    for value in values:
        name = value.strip()
        count = seen.get(name, 0)
        output.append(name if count == 0 else f"{name}.{count}")
        seen[name] = count + 1
    return output


def _extract_records(payload: Any) -> list[Mapping[str, Any]]:
    if isinstance(payload, list):
        return [record for record in payload if isinstance(record, Mapping)]
    if isinstance(payload, dict):
        for key in ("deals", "trades", "rows", "data"):
            value = payload.get(key)
            if isinstance(value, list):
                return [record for record in value if isinstance(record, Mapping)]
    raise ValueError("Unsupported JSON format for report payload")
