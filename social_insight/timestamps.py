"""
Timestamp normalization.

Providers send epoch seconds, epoch milliseconds or ISO-8601 strings.
Everything is stored as an ISO-8601 UTC string with a Z suffix.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Anything above this is too large to be epoch seconds (year 2286+)
MILLISECONDS_THRESHOLD = 9_999_999_999

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
COMPACT_FORMAT = "%Y%m%d_%H%M%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_utc(moment: datetime) -> str:
    """Render an aware datetime as ISO-8601 UTC with Z suffix."""
    return moment.astimezone(timezone.utc).strftime(ISO_FORMAT)


def _from_epoch(value: float) -> datetime:
    if value > MILLISECONDS_THRESHOLD:
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _is_numeric_string(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Returns None for absent or unparseable values.
    """
    # bool is an int subclass, never a timestamp
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, (int, float)):
            return _from_epoch(value)

        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if _is_numeric_string(text):
                return _from_epoch(float(text))
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Unparseable timestamp {value!r}: {e}")
        return None

    logger.warning(f"Unsupported timestamp type: {type(value).__name__}")
    return None


def normalize_timestamp(value: Any) -> str:
    """
    Normalize a provider timestamp to an ISO-8601 UTC string.

    Falls back to the current time when the value is missing or cannot
    be parsed, so a bad timestamp never aborts a batch.
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        parsed = utc_now()
    return format_utc(parsed)


def compact_timestamp(iso_value: str) -> str:
    """Render a normalized timestamp as YYYYMMDD_HHMMSS for filenames."""
    parsed = parse_timestamp(iso_value) or utc_now()
    return parsed.strftime(COMPACT_FORMAT)
