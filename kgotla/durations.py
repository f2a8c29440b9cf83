"""Duration strings such as ``15m``, ``24h`` and ``7d``.

Used by settings validation and by the token service to turn a configured
lifetime into an absolute expiry instant.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

DURATION_PATTERN = re.compile(r"^(\d+)([mhd])$")

_UNIT_SECONDS = {"m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


class DurationFormatError(ValueError):
    """Raised when a duration string does not match ``<amount><m|h|d>``."""


def parse_duration(spec: str) -> timedelta:
    if not isinstance(spec, str):
        raise DurationFormatError(f"duration must be a string, got {type(spec).__name__}")
    match = DURATION_PATTERN.match(spec.strip())
    if not match:
        raise DurationFormatError(f"invalid duration format: {spec!r}")
    amount = int(match.group(1))
    if amount <= 0:
        raise DurationFormatError(f"duration must be positive: {spec!r}")
    return timedelta(seconds=amount * _UNIT_SECONDS[match.group(2)])


def expiry_from_duration(spec: str, *, now: Optional[datetime] = None) -> datetime:
    """Return the aware UTC instant ``spec`` after ``now``."""
    base = now or datetime.now(timezone.utc)
    return base + parse_duration(spec)
