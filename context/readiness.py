"""
Readiness tracker - pure functions deciding when a document is queryable.

Polling clients depend on these exact thresholds.
"""

from __future__ import annotations

import math

from ingestion.models import ReadinessSummary

DEFAULT_REQUIRED_PARTS_CAP = 5
DEFAULT_SECONDS_PER_PART = 2
MIN_RETRY_AFTER_SECONDS = 1
MAX_RETRY_AFTER_SECONDS = 5
MIN_ESTIMATED_SECONDS = 2


def _clamp(low: int, value: int, high: int) -> int:
    return max(low, min(value, high))


def required_parts(pages_indexed: int, cap: int = DEFAULT_REQUIRED_PARTS_CAP) -> int:
    """Half the indexed pages, rounded up, within [1, cap]."""
    return _clamp(1, math.ceil(pages_indexed / 2), max(1, cap))


def percent_ready(parts: int, required: int) -> int:
    """Progress toward required parts, 0-100, rounded half up."""
    if required == 0:
        return 100
    return min(100, math.floor(parts / required * 100 + 0.5))


def is_ready(status: str, parts: int, required: int) -> bool:
    return status == "ready" and parts >= required


def retry_after_seconds(parts: int, required: int) -> int:
    """Polling hint, always within [1, 5]."""
    return _clamp(MIN_RETRY_AFTER_SECONDS, required - parts, MAX_RETRY_AFTER_SECONDS)


def estimated_time_seconds(parts: int, required: int, sec_per_part: int = DEFAULT_SECONDS_PER_PART) -> int:
    remaining = max(0, required - parts)
    if remaining == 0:
        return 0
    return max(MIN_ESTIMATED_SECONDS, remaining * sec_per_part)


def readiness_summary(
    status: str,
    parts: int,
    pages_indexed: int,
    cap: int = DEFAULT_REQUIRED_PARTS_CAP,
) -> ReadinessSummary:
    """
    Combine the readiness functions into one polling view.

    Time estimate and retry hint are only present while processing and not ready.
    """
    required = required_parts(pages_indexed, cap)
    ready = is_ready(status, parts, required)

    summary = ReadinessSummary(
        status=status,
        parts=parts,
        required_parts=required,
        percent_ready=percent_ready(parts, required),
        is_ready=ready,
    )
    if not ready and status == "processing":
        summary.estimated_time_seconds = estimated_time_seconds(parts, required)
        summary.retry_after_seconds = retry_after_seconds(parts, required)
    return summary
