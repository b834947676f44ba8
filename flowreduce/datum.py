"""Values handed to reduce handlers: input datums and window metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Datum:
    """One input element of a reduce operation."""

    value: bytes
    event_time: datetime
    watermark: datetime
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class IntervalWindow:
    """The time interval a reduce operation covers."""

    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class Metadata:
    """Metadata passed to a reduce handler alongside its input."""

    interval_window: IntervalWindow