"""
Utility functions for the webhook service.
"""

import hmac
import logging
import re
from pathlib import Path
from typing import Any, Optional

from social_insight.timestamps import format_utc, utc_now

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")


def verify_token(supplied: Optional[str], expected: str) -> bool:
    """
    Compare a webhook verify token against the configured secret.

    Args:
        supplied: Token from the handshake query string
        expected: WEBHOOK_VERIFY_TOKEN

    Returns:
        True if the tokens match, False otherwise
    """
    if supplied is None:
        logger.info("Verify token missing")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))
    logger.info(f"Verify token check: {'valid' if is_valid else 'invalid'}")

    return is_valid


def normalize_digits(value: Any) -> Optional[str]:
    """Strip every non-digit character; None when nothing is left."""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    digits = _NON_DIGITS.sub("", str(value))
    return digits or None


def append_raw_body(log_path: str, body: bytes) -> None:
    """
    Append a raw webhook body to the debug log, prefixed with the UTC time.

    Best effort: a failure is logged and swallowed so the request is
    never failed because of the debug log.
    """
    try:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        text = body.decode("utf-8", errors="replace")
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{format_utc(utc_now())}] {text}\n")
    except OSError as e:
        logger.warning(f"Unable to append webhook body to {log_path}: {e}")
