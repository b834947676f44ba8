"""Session-window reduce: handler interfaces, task manager and service.

A session reducer is created once for every keyed session window. Session
windows may be opened, appended to, expanded, merged and closed. When
sessions merge, the accumulators of the merged sessions are handed to the
reducer of the resulting session.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Iterable, Iterator, Optional, Sequence

from flowreduce.datum import Datum
from flowreduce.message import Message
from flowreduce.protocol import (
    Event,
    KeyedWindow,
    ReadyResponse,
    ReduceError,
    Result,
    SessionReduceRequest,
    SessionReduceResponse,
    SessionWindowOperation,
    window_key,
)

logger = logging.getLogger(__name__)

_CLOSED = object()

Output = Callable[[Message], None]


class SessionReducer(ABC):
    """A reduce handler for a single keyed session window."""

    @abstractmethod
    def session_reduce(
        self, keys: Sequence[str], datums: Iterator[Datum], output: Output
    ) -> None:
        """Consume the session's datums, passing results to ``output``."""

    @abstractmethod
    def accumulator(self) -> bytes:
        """Return the state of this session; called when it is merged into another."""

    @abstractmethod
    def merge_accumulator(self, accumulator: bytes) -> None:
        """Fold in the state of another session merged into this one."""


class SessionReducerCreator(ABC):
    """Creates a session reducer; invoked once for every keyed window."""

    @abstractmethod
    def create(self) -> SessionReducer:
        """Return a fresh session reducer."""


def _drain(inbox: queue.Queue) -> Iterator[Datum]:
    while True:
        item = inbox.get()
        if item is _CLOSED:
            return
        yield item


def _keyed_window_key(window: KeyedWindow) -> str:
    return window_key(window.start, window.end, window.keys)


class _SessionTask:
    """One running session reducer."""

    def __init__(self, keyed_window: KeyedWindow, reducer: SessionReducer) -> None:
        self._keyed_window = keyed_window
        self._lock = threading.Lock()
        self.reducer = reducer
        self.inbox: queue.Queue = queue.Queue()
        self.done = threading.Event()
        self.merged = threading.Event()

    @property
    def keyed_window(self) -> KeyedWindow:
        with self._lock:
            return self._keyed_window

    @keyed_window.setter
    def keyed_window(self, window: KeyedWindow) -> None:
        with self._lock:
            self._keyed_window = window

    @property
    def key(self) -> str:
        return _keyed_window_key(self.keyed_window)

    def response(self, message: Message) -> SessionReduceResponse:
        return SessionReduceResponse(
            result=Result(keys=message.keys, value=message.value, tags=message.tags),
            keyed_window=self.keyed_window,
        )

    def eof_response(self) -> SessionReduceResponse:
        return SessionReduceResponse(keyed_window=self.keyed_window, eof=True)


class SessionReduceTaskManager:
    """Runs one session reducer per keyed session and collects their responses."""

    def __init__(
        self,
        creator: SessionReducerCreator,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self._creator = creator
        self._on_shutdown = on_shutdown
        self._tasks: dict[str, _SessionTask] = {}
        self._lock = threading.Lock()
        self._responses: queue.Queue = queue.Queue()
        self._failures: list[BaseException] = []

    def _fail(self, exc: BaseException) -> None:
        logger.error("error inside session reduce handler", exc_info=exc)
        with self._lock:
            self._failures.append(exc)
        if self._on_shutdown is not None:
            self._on_shutdown()

    def create_task(self, request: SessionReduceRequest) -> None:
        """Start a session reducer for the request's window, feeding it any payload."""
        windows = request.operation.keyed_windows
        if len(windows) != 1:
            raise ReduceError(
                "create operation error: invalid number of windows in the request - "
                f"{len(windows)}"
            )
        task = _SessionTask(windows[0], self._creator.create())
        with self._lock:
            self._tasks[task.key] = task

        worker = threading.Thread(target=self._run, args=(task,), daemon=True)
        worker.start()

        if request.payload is not None:
            task.inbox.put(request.payload.to_datum())

    def _run(self, task: _SessionTask) -> None:
        def output(message: Message) -> None:
            # output of a session merged into another one is discarded
            if not task.merged.is_set():
                self._responses.put(task.response(message))

        try:
            task.reducer.session_reduce(
                task.keyed_window.keys, _drain(task.inbox), output
            )
            if not task.merged.is_set():
                self._responses.put(task.eof_response())
        except Exception as exc:
            self._fail(exc)
        finally:
            with self._lock:
                key = task.key
                if self._tasks.get(key) is task:
                    del self._tasks[key]
            task.done.set()

    def append_to_task(self, request: SessionReduceRequest) -> None:
        """Feed the payload to its session, starting one if none exists."""
        windows = request.operation.keyed_windows
        if len(windows) != 1:
            raise ReduceError(
                "append operation error: invalid number of windows in the request - "
                f"{len(windows)}"
            )
        with self._lock:
            task = self._tasks.get(_keyed_window_key(windows[0]))
        if task is None:
            self.create_task(request)
            return
        if request.payload is not None:
            task.inbox.put(request.payload.to_datum())

    def close_task(self, request: SessionReduceRequest) -> None:
        """End the input of every known session named in the request."""
        with self._lock:
            to_close = [
                task
                for task in (
                    self._tasks.get(_keyed_window_key(window))
                    for window in request.operation.keyed_windows
                )
                if task is not None
            ]
        for task in to_close:
            task.inbox.put(_CLOSED)

    def merge_tasks(self, request: SessionReduceRequest) -> None:
        """Merge the named sessions into one spanning all their windows.

        The merged sessions are closed, their accumulators collected and
        folded into a new session created for the spanning window.
        """
        windows = request.operation.keyed_windows
        if not windows:
            raise ReduceError("merge operation error: no windows in the request")

        start, end = windows[0].start, windows[0].end
        tasks: list[_SessionTask] = []
        with self._lock:
            for window in windows:
                key = _keyed_window_key(window)
                task = self._tasks.get(key)
                if task is None:
                    raise ReduceError(f"merge operation error: task not found for {key}")
                task.merged.set()
                tasks.append(task)
                if window.start < start:
                    start = window.start
                if window.end > end:
                    end = window.end
        merged_window = replace(windows[0], start=start, end=end)

        accumulators: list[bytes] = []
        try:
            for task in tasks:
                task.inbox.put(_CLOSED)
                task.done.wait()
                accumulators.append(task.reducer.accumulator())
        except Exception as exc:
            self._fail(exc)
            return

        self.create_task(
            SessionReduceRequest(
                operation=SessionWindowOperation(Event.OPEN, (merged_window,)),
                payload=None,
            )
        )

        with self._lock:
            merged_task = self._tasks.get(_keyed_window_key(merged_window))
        if merged_task is None:
            raise ReduceError(
                f"merge operation error: merged task not found for key {merged_window}"
            )
        try:
            for accumulator in accumulators:
                merged_task.reducer.merge_accumulator(accumulator)
        except Exception as exc:
            self._fail(exc)

    def expand_task(self, request: SessionReduceRequest) -> None:
        """Move a session from its old window (first) to its new window (second)."""
        windows = request.operation.keyed_windows
        if len(windows) != 2:
            raise ReduceError("expand operation error: expected exactly two windows")

        with self._lock:
            key = _keyed_window_key(windows[0])
            task = self._tasks.get(key)
            if task is None:
                raise ReduceError(
                    f"expand operation error: task not found for key - {key}"
                )
            task.keyed_window = windows[1]
            del self._tasks[key]
            self._tasks[task.key] = task

        if request.payload is not None:
            task.inbox.put(request.payload.to_datum())

    def wait_all(self) -> None:
        """Wait for every pending session, then end the output.

        Raises ReduceError if any handler failed.
        """
        with self._lock:
            pending = list(self._tasks.values())
        for task in pending:
            task.done.wait()
        self._responses.put(_CLOSED)
        with self._lock:
            failures = list(self._failures)
        if failures:
            raise ReduceError(
                f"session reduce handler failed: {failures[0]}"
            ) from failures[0]

    def iter_responses(self) -> Iterator[SessionReduceResponse]:
        """Yield responses until the output is ended by ``wait_all``."""
        while True:
            item = self._responses.get()
            if item is _CLOSED:
                return
            yield item


class SessionReduceService:
    """Applies session reducers to a stream of requests and streams back results."""

    def __init__(
        self,
        creator: SessionReducerCreator,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self._creator = creator
        self._on_shutdown = on_shutdown

    def is_ready(self) -> ReadyResponse:
        """Report that the service is ready."""
        return ReadyResponse(ready=True)

    def session_reduce_fn(
        self,
        requests: Iterable[SessionReduceRequest],
        send: Callable[[SessionReduceResponse], None],
    ) -> None:
        """Process every request, passing each response to ``send``.

        Raises ReduceError when a request is invalid, a handler fails or
        sending a response fails.
        """
        manager = SessionReduceTaskManager(self._creator, self._on_shutdown)
        send_errors: list[Exception] = []

        def forward() -> None:
            try:
                for response in manager.iter_responses():
                    send(response)
            except Exception as exc:
                send_errors.append(exc)

        sender = threading.Thread(target=forward, daemon=True)
        sender.start()

        handlers = {
            Event.OPEN: manager.create_task,
            Event.CLOSE: manager.close_task,
            Event.APPEND: manager.append_to_task,
            Event.MERGE: manager.merge_tasks,
            Event.EXPAND: manager.expand_task,
        }
        for request in requests:
            handlers[request.operation.event](request)

        try:
            manager.wait_all()
        finally:
            sender.join()
        if send_errors:
            raise ReduceError(str(send_errors[0])) from send_errors[0]