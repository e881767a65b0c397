"""Time source for the engines.

All persisted timestamps are naive UTC, so every "now" comes from a Clock
that tests can replace.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning naive UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(UTC).replace(tzinfo=None)
