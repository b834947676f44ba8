"""Server options for the reduce servers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace

DEFAULT_MAX_MESSAGE_SIZE = 1024 * 1024 * 64


class ServerKind(enum.Enum):
    """The kind of reduce server, each with its own default paths."""

    REDUCER = ("/var/run/numaflow/reduce.sock", "/var/run/numaflow/reducer-server-info")
    REDUCESTREAMER = (
        "/var/run/numaflow/reducestream.sock",
        "/var/run/numaflow/reducestreamer-server-info",
    )
    SESSIONREDUCER = (
        "/var/run/numaflow/sessionreduce.sock",
        "/var/run/numaflow/sessionreducer-server-info",
    )

    @property
    def sock_addr(self) -> str:
        return self.value[0]

    @property
    def server_info_file_path(self) -> str:
        return self.value[1]


@dataclass(frozen=True)
class Options:
    """Settings of a reduce server."""

    sock_addr: str
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    server_info_file_path: str = ""

    def with_max_message_size(self, size: int) -> Options:
        """Return options with the max send and receive message size set."""
        return replace(self, max_message_size=size)

    def with_sock_addr(self, addr: str) -> Options:
        """Return options with the socket address set."""
        return replace(self, sock_addr=addr)

    def with_server_info_file_path(self, path: str) -> Options:
        """Return options with the server info file path set."""
        return replace(self, server_info_file_path=path)


def default_options(kind: ServerKind) -> Options:
    """Return the default options for the given kind of server."""
    return Options(
        sock_addr=kind.sock_addr,
        max_message_size=DEFAULT_MAX_MESSAGE_SIZE,
        server_info_file_path=kind.server_info_file_path,
    )