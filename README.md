# flowreduce

Write the user side of a session-window reduce step in a stream pipeline.
You supply the reduce logic as a `SessionReducer`. flowreduce runs one
instance of it for each keyed session window. It feeds each instance its
datums, follows the windows as they are opened, appended to, expanded,
merged and closed, and turns your output into response objects.

## Installation

```
pip install flowreduce
```

## Writing a session reducer

Subclass `flowreduce.sessionreducer.SessionReducer` and implement three methods:

- `session_reduce(keys, datums, output)`: iterate over `datums`, which are
  `flowreduce.datum.Datum` objects, and call `output(message)` for each
  result. The iterator ends when the session is closed.
- `accumulator()`: return the session's state as bytes. It is called when
  this session is merged into another one.
- `merge_accumulator(accumulator)`: add another session's state into this
  one.

A `SessionReducerCreator` returns a new reducer from `create()`. It is called
once for every keyed session window.

```python
from datetime import datetime, timezone

from flowreduce.message import Message
from flowreduce.protocol import (
    Event, KeyedWindow, Payload, SessionReduceRequest, SessionWindowOperation,
)
from flowreduce.sessionreducer import (
    SessionReduceService, SessionReducer, SessionReducerCreator,
)


class Sum(SessionReducer):
    def __init__(self):
        self.total = 0

    def session_reduce(self, keys, datums, output):
        for datum in datums:
            self.total += int(datum.value)
        output(Message(str(self.total).encode()).with_keys(keys))

    def accumulator(self):
        return str(self.total).encode()

    def merge_accumulator(self, accumulator):
        self.total += int(accumulator)


class SumCreator(SessionReducerCreator):
    def create(self):
        return Sum()


window = KeyedWindow(
    start=datetime.fromtimestamp(60, timezone.utc),
    end=datetime.fromtimestamp(120, timezone.utc),
    slot="slot-0",
    keys=("client",),
)
requests = [
    SessionReduceRequest(
        operation=SessionWindowOperation(Event.OPEN, (window,)),
        payload=Payload(keys=("client",), value=b"10"),
    ),
    SessionReduceRequest(
        operation=SessionWindowOperation(Event.APPEND, (window,)),
        payload=Payload(keys=("client",), value=b"20"),
    ),
    SessionReduceRequest(operation=SessionWindowOperation(Event.CLOSE, (window,))),
]

responses = []
SessionReduceService(SumCreator()).session_reduce_fn(requests, responses.append)
```

`session_reduce_fn` handles each request according to its `Event`:

- `OPEN` starts a session. The window list must contain exactly one window.
- `APPEND` sends the payload to an existing session, or opens a new session
  if none exists. The window list must contain exactly one window.
- `EXPAND` moves a session from the first window in the list to the second.
  The list must contain exactly two windows.
- `MERGE` closes the listed sessions and collects their accumulators. It then
  opens a session over a window that spans all of them and passes the
  accumulators to `merge_accumulator` on that session. Output from the merged
  sessions is discarded.
- `CLOSE` ends input to each listed session that exists.

Each result is passed to `send` as a `SessionReduceResponse`. The response
carries the session's current keyed window. When a session that was not
merged finishes, a response with `eof=True` follows its results. The call
returns once the requests are exhausted and every session has finished.

`flowreduce.protocol.ReduceError` is raised in these cases: a request has
the wrong number of windows, a session to be merged or expanded is not
found, a handler raises, or `send` raises. You can pass `on_shutdown` to the
service; it is called when a handler fails.

For lower-level control, `SessionReduceTaskManager` exposes the operations
directly: `create_task`, `append_to_task`, `close_task`, `merge_tasks`,
`expand_task`, `wait_all` and `iter_responses`.

## Messages

`Message(value)` holds bytes. `with_keys()` and `with_tags()` return a copy
with keys or tags set. `message_to_drop()` returns an empty message tagged
with `DROP`, which tells the pipeline to discard the result.

## Options

`flowreduce.options.default_options(kind)` returns the defaults for a
`ServerKind`: socket path, maximum message size (64 MiB) and server-info file
path. `with_max_message_size()`, `with_sock_addr()` and
`with_server_info_file_path()` return adjusted copies.

## What is not included

- There is no network server. Nothing listens on the socket path in
  `Options`, and no server-info file is written. You call the service
  directly, with an iterable of requests and a `send` callable.
- Only session windows are processed. `flowreduce.protocol` also defines
  request and response types for aligned windows (`ReduceRequest`,
  `WindowOperation`, `ReduceResponse`). The package has no service that
  handles them.

## Tests

```
pip install "flowreduce[test]"
pytest
```