"""Request and response types exchanged with the reduce services."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Iterable, Optional

from flowreduce.datum import Datum

DELIMITER = ":"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ReduceError(RuntimeError):
    """Raised when a reduce stream cannot be processed."""


class Event(enum.Enum):
    """Window operation carried by a request."""

    OPEN = "open"
    CLOSE = "close"
    APPEND = "append"
    MERGE = "merge"
    EXPAND = "expand"


def _unix_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(milliseconds=1)


def window_key(start: datetime, end: datetime, keys: Iterable[str]) -> str:
    """Return the key identifying a keyed window: ``start:end:k1:k2...`` in ms."""
    return f"{_unix_millis(start)}:{_unix_millis(end)}:{DELIMITER.join(keys)}"


class _TupleFields:
    """Turns the sequence fields named in ``_tuple_fields`` into tuples."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ()

    def __post_init__(self) -> None:
        for name in self._tuple_fields:
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))


@dataclass(frozen=True)
class Window:
    """An aligned window."""

    start: datetime
    end: datetime
    slot: str = ""


@dataclass(frozen=True)
class KeyedWindow(_TupleFields, Window):
    """A session window that belongs to a set of keys."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ("keys",)

    keys: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Payload(_TupleFields):
    """The data part of a request."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ("keys",)

    keys: tuple[str, ...] = field(default_factory=tuple)
    value: bytes = b""
    event_time: datetime = EPOCH
    watermark: datetime = EPOCH
    headers: dict[str, str] = field(default_factory=dict)

    def to_datum(self) -> Datum:
        """Build the datum handed to a reduce handler."""
        return Datum(self.value, self.event_time, self.watermark, dict(self.headers))


@dataclass(frozen=True)
class WindowOperation(_TupleFields):
    """Operation on aligned windows."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ("windows",)

    event: Event
    windows: tuple[Window, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReduceRequest:
    """A request to an aligned reduce service."""

    payload: Payload
    operation: WindowOperation


@dataclass(frozen=True)
class Result(_TupleFields):
    """The result part of a response."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ("keys", "tags")

    keys: tuple[str, ...] = field(default_factory=tuple)
    value: bytes = b""
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReduceResponse:
    """A response from an aligned reduce service."""

    result: Optional[Result] = None
    window: Optional[Window] = None
    eof: bool = False


@dataclass(frozen=True)
class SessionWindowOperation(_TupleFields):
    """Operation on session windows."""

    _tuple_fields: ClassVar[tuple[str, ...]] = ("keyed_windows",)

    event: Event
    keyed_windows: tuple[KeyedWindow, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SessionReduceRequest:
    """A request to a session reduce service; the payload may be absent."""

    operation: SessionWindowOperation
    payload: Optional[Payload] = None


@dataclass(frozen=True)
class SessionReduceResponse:
    """A response from a session reduce service."""

    result: Optional[Result] = None
    keyed_window: Optional[KeyedWindow] = None
    eof: bool = False


@dataclass(frozen=True)
class ReadyResponse:
    """Readiness answer of a service."""

    ready: bool = True