"""
Date parsing utilities for flexible date format handling.

Legacy maintenance exports mix ISO timestamps, US and European numeric
dates and free-form strings; everything goes through pandas and comes out
as a timezone-aware UTC ``datetime``.
"""

import pandas as pd
from typing import Any, Optional
import re
from datetime import date, datetime, timezone
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.debug("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse messages after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _prefer_dayfirst(value: str) -> bool:
    """Decide between dd/mm and mm/dd for a numeric date like ``04/10/2024``."""
    parts = re.split(r'[/.-]', value)
    try:
        first = int(parts[0])
        second = int(parts[1])
    except (ValueError, IndexError):
        return settings.date_default_dayfirst

    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None) -> Optional[datetime]:
    """
    Parse a date value from various formats.

    Supports formats:
    - ISO 8601: "2024-09-04T23:09:18Z"
    - DD/MM/YYYY: "20/10/2025"
    - MM/DD/YYYY: "10/20/2025"
    - YYYY-MM-DD: "2025-10-20"
    - And many others via pandas inference

    Args:
        value: Date value in any supported format
        log_context: Label used to group failure logs (usually the field key)

    Returns:
        Timezone-aware UTC datetime, or None if parsing fails
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text_value = str(value).strip()
    if text_value == "":
        return None

    parse_attempts = []
    if re.match(r'^\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}', text_value):
        dayfirst_preferred = _prefer_dayfirst(text_value)
        parse_attempts.append(dayfirst_preferred)
        # Always try the alternate interpretation as a fallback
        parse_attempts.append(not dayfirst_preferred)
    else:
        parse_attempts.append(None)

    last_error = None
    parsed = None
    for dayfirst in parse_attempts:
        try:
            if dayfirst is None:
                parsed = pd.to_datetime(text_value, utc=True, errors='raise')
            else:
                parsed = pd.to_datetime(text_value, utc=True, dayfirst=dayfirst, errors='raise')
            break
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue

    if parsed is None or pd.isna(parsed):
        _record_parse_failure(text_value, log_context, last_error or ValueError("Unable to determine format"))
        return None

    return parsed.to_pydatetime()
