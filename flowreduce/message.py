"""Output messages produced by reduce handlers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable

DROP = "U+005C__DROP__"


@dataclass(frozen=True)
class Message:
    """A result produced by a reduce handler.

    ``keys`` and ``tags`` are stored as tuples; tags drive conditional
    forwarding downstream.
    """

    value: bytes
    keys: tuple[str, ...] = field(default_factory=tuple)
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", bytes(self.value))
        object.__setattr__(self, "keys", tuple(self.keys or ()))
        object.__setattr__(self, "tags", tuple(self.tags or ()))

    def with_keys(self, keys: Iterable[str]) -> Message:
        """Return a copy of this message carrying the given keys."""
        return replace(self, keys=tuple(keys))

    def with_tags(self, tags: Iterable[str]) -> Message:
        """Return a copy of this message carrying the given tags."""
        return replace(self, tags=tuple(tags))


def message_to_drop() -> Message:
    """Return a message that downstream will drop."""
    return Message(b"", tags=(DROP,))