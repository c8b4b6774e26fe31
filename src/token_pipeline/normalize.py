"""Validation and normalization of raw provider entries into TokenRecords."""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .exceptions import ValidationError
from .models import TokenRecord, utcnow


IDENTIFIER_FIELDS = ("identifier", "address", "id", "symbol")
TIMESTAMP_FIELDS = ("timestamp", "last_updated", "updated_at")
REQUIRED_METRICS = ("price",)
OPTIONAL_METRICS = (
    "volume_24h",
    "market_cap",
    "circulating_supply",
    "total_supply",
    "price_change_24h",
)

# Epoch values above this are taken to be milliseconds
_EPOCH_MS_THRESHOLD = 1e11


def normalize_entry(entry: Any) -> TokenRecord:
    """
    Convert one raw provider entry into a TokenRecord.

    Raises:
        ValidationError: the entry is not a mapping, lacks an identifier,
            timestamp or required metric, or carries a non-numeric metric.
    """
    if not isinstance(entry, dict):
        raise ValidationError(f"Entry must be an object, got {type(entry).__name__}")

    identifier = _extract_identifier(entry)
    source_ts = _extract_timestamp(entry, identifier)

    metrics: Dict[str, float] = {}
    for name in REQUIRED_METRICS:
        if entry.get(name) is None:
            raise ValidationError(f"Missing required metric '{name}'", identifier=identifier, field=name)
        metrics[name] = _to_number(entry[name], identifier, name)

    for name in OPTIONAL_METRICS:
        if entry.get(name) is not None:
            metrics[name] = _to_number(entry[name], identifier, name)

    return TokenRecord(
        identifier=identifier,
        metrics=metrics,
        source_ts=source_ts,
        updated_at=utcnow(),
    )


def _extract_identifier(entry: Dict[str, Any]) -> str:
    for name in IDENTIFIER_FIELDS:
        value = entry.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValidationError("Missing identifier", field="identifier")


def _extract_timestamp(entry: Dict[str, Any], identifier: str) -> datetime:
    for name in TIMESTAMP_FIELDS:
        if entry.get(name) is not None:
            return parse_timestamp(entry[name], identifier, name)
    raise ValidationError("Missing source timestamp", identifier=identifier, field="timestamp")


def parse_timestamp(value: Any, identifier: Optional[str] = None, field: str = "timestamp") -> datetime:
    """Parse epoch seconds, epoch milliseconds or ISO 8601 into an aware UTC datetime."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp {value!r}", identifier=identifier, field=field)

    if isinstance(value, (int, float)):
        try:
            if not math.isfinite(value) or value < 0:
                raise ValidationError(f"Invalid timestamp {value!r}", identifier=identifier, field=field)
            seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Timestamp out of range {value!r}", identifier=identifier, field=field)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp {value!r}", identifier=identifier, field=field)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        try:
            return parsed.astimezone(timezone.utc)
        except OverflowError:
            raise ValidationError(f"Timestamp out of range {value!r}", identifier=identifier, field=field)

    raise ValidationError(f"Invalid timestamp {value!r}", identifier=identifier, field=field)


def _to_number(value: Any, identifier: str, field: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Metric '{field}' is not numeric", identifier=identifier, field=field)

    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Metric '{field}' is not numeric: {value!r}", identifier=identifier, field=field)

    if not math.isfinite(number):
        raise ValidationError(f"Metric '{field}' is not finite: {value!r}", identifier=identifier, field=field)
    return number
