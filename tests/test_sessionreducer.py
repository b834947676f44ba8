import threading
from datetime import datetime, timezone

import pytest

from flowreduce.message import Message
from flowreduce.protocol import (
    Event,
    KeyedWindow,
    Payload,
    ReduceError,
    Result,
    SessionReduceRequest,
    SessionReduceResponse,
    SessionWindowOperation,
)
from flowreduce.sessionreducer import (
    SessionReduceService,
    SessionReduceTaskManager,
    SessionReducer,
    SessionReducerCreator,
)


class SessionSum(SessionReducer):
    def __init__(self):
        self._sum = 0
        self._lock = threading.Lock()

    def session_reduce(self, keys, datums, output):
        for datum in datums:
            with self._lock:
                self._sum += int(datum.value)
        with self._lock:
            total = self._sum
        output(Message(str(total).encode()).with_keys([keys[0] + "_test"]))

    def accumulator(self):
        with self._lock:
            return str(self._sum).encode()

    def merge_accumulator(self, accumulator):
        with self._lock:
            self._sum += int(accumulator)


class SessionSumCreator(SessionReducerCreator):
    def create(self):
        return SessionSum()


class Failing(SessionReducer):
    def session_reduce(self, keys, datums, output):
        for _ in datums:
            raise ValueError("boom")

    def accumulator(self):
        return b"0"

    def merge_accumulator(self, accumulator):
        pass


class FailingCreator(SessionReducerCreator):
    def create(self):
        return Failing()


def ms(value):
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def kw(key, start, end):
    return KeyedWindow(ms(start), ms(end), "slot-0", (key,))


def payload(key, value):
    return Payload(keys=(key,), value=str(value).encode())


def open_(key, start, end, value):
    return SessionReduceRequest(
        SessionWindowOperation(Event.OPEN, (kw(key, start, end),)), payload(key, value)
    )


def append_(key, start, end, value=None):
    body = payload(key, value) if value is not None else None
    return SessionReduceRequest(
        SessionWindowOperation(Event.APPEND, (kw(key, start, end),)), body
    )


def expand_(key, old, new, value):
    return SessionReduceRequest(
        SessionWindowOperation(Event.EXPAND, (kw(key, *old), kw(key, *new))),
        payload(key, value),
    )


def merge_(key, first, second):
    return SessionReduceRequest(
        SessionWindowOperation(Event.MERGE, (kw(key, *first), kw(key, *second)))
    )


def close_(*windows):
    return SessionReduceRequest(SessionWindowOperation(Event.CLOSE, tuple(windows)))


def expected(key, value, start, end):
    return SessionReduceResponse(
        result=Result(keys=(key + "_test",), value=str(value).encode()),
        keyed_window=kw(key, start, end),
    )


def run(requests, creator=None):
    service = SessionReduceService(creator or SessionSumCreator())
    out = []
    service.session_reduce_fn(requests, out.append)
    return out


def results(responses):
    return sorted((r for r in responses if not r.eof), key=lambda r: r.result.value)


OPEN_FOUR = [
    open_("client1", 60000, 70000, 10),
    open_("client2", 60000, 70000, 20),
    open_("client1", 75000, 85000, 10),
    open_("client2", 78000, 88000, 20),
]

CASES = {
    "open_append_close": (
        [
            SessionReduceRequest(
                SessionWindowOperation(Event.OPEN, (kw("client", 60000, 120000),)),
                Payload(
                    keys=("client",), value=b"10", headers={"x-txn-id": "test-txn-1"}
                ),
            ),
            append_("client", 60000, 120000, 20),
            append_("client", 60000, 120000, 30),
            append_("client", 60000, 120000),
            close_(kw("client", 60000, 120000)),
        ],
        [expected("client", 60, 60000, 120000)],
    ),
    "open_expand_close": (
        [
            open_("client1", 60000, 70000, 10),
            open_("client2", 60000, 70000, 20),
            expand_("client1", (60000, 70000), (60000, 75000), 10),
            expand_("client2", (60000, 70000), (60000, 79000), 20),
            close_(kw("client1", 60000, 75000), kw("client2", 60000, 79000)),
        ],
        [
            expected("client1", 20, 60000, 75000),
            expected("client2", 40, 60000, 79000),
        ],
    ),
    "open_merge_close": (
        OPEN_FOUR
        + [
            merge_("client1", (60000, 70000), (75000, 85000)),
            merge_("client2", (60000, 70000), (78000, 88000)),
            close_(kw("client1", 60000, 85000), kw("client2", 60000, 88000)),
        ],
        [
            expected("client1", 20, 60000, 85000),
            expected("client2", 40, 60000, 88000),
        ],
    ),
    "open_expand_append_merge_close": (
        OPEN_FOUR
        + [
            expand_("client1", (75000, 85000), (75000, 95000), 10),
            expand_("client2", (78000, 88000), (78000, 98000), 20),
            append_("client1", 75000, 95000, 10),
            append_("client2", 78000, 98000, 20),
            merge_("client1", (60000, 70000), (75000, 95000)),
            merge_("client2", (60000, 70000), (78000, 98000)),
            close_(kw("client1", 60000, 95000), kw("client2", 60000, 98000)),
        ],
        [
            expected("client1", 40, 60000, 95000),
            expected("client2", 80, 60000, 98000),
        ],
    ),
    "open_merge_append_close": (
        OPEN_FOUR
        + [
            merge_("client1", (60000, 70000), (75000, 85000)),
            append_("client1", 60000, 85000, 10),
            merge_("client2", (60000, 70000), (78000, 88000)),
            append_("client2", 60000, 88000, 10),
            close_(kw("client1", 60000, 85000), kw("client2", 60000, 88000)),
        ],
        [
            expected("client1", 30, 60000, 85000),
            expected("client2", 50, 60000, 88000),
        ],
    ),
    "open_merge_expand_close": (
        OPEN_FOUR
        + [
            merge_("client1", (60000, 70000), (75000, 85000)),
            merge_("client2", (60000, 70000), (78000, 88000)),
            expand_("client1", (60000, 85000), (60000, 95000), 10),
            expand_("client2", (60000, 88000), (60000, 98000), 10),
            close_(kw("client1", 60000, 95000), kw("client2", 60000, 98000)),
        ],
        [
            expected("client1", 30, 60000, 95000),
            expected("client2", 50, 60000, 98000),
        ],
    ),
    "open_merge_merge_close": (
        OPEN_FOUR
        + [
            merge_("client1", (60000, 70000), (75000, 85000)),
            merge_("client2", (60000, 70000), (78000, 88000)),
            open_("client1", 50000, 80000, 10),
            open_("client2", 50000, 80000, 10),
            merge_("client1", (60000, 85000), (50000, 80000)),
            merge_("client2", (60000, 88000), (50000, 80000)),
            close_(kw("client1", 50000, 85000), kw("client2", 50000, 88000)),
        ],
        [
            expected("client1", 30, 50000, 85000),
            expected("client2", 50, 50000, 88000),
        ],
    ),
}


@pytest.mark.parametrize("name", sorted(CASES))
def test_session_reduce_fn(name):
    requests, want = CASES[name]
    assert results(run(requests)) == want


def test_merged_sessions_send_no_eof():
    requests, _ = CASES["open_merge_close"]
    eofs = [r for r in run(requests) if r.eof]
    assert sorted(r.keyed_window.end for r in eofs) == [ms(85000), ms(88000)]
    assert all(r.result is None for r in eofs)


def test_is_ready():
    assert SessionReduceService(SessionSumCreator()).is_ready().ready is True


def test_create_task_rejects_two_windows():
    manager = SessionReduceTaskManager(SessionSumCreator())
    request = SessionReduceRequest(
        SessionWindowOperation(
            Event.OPEN, (kw("a", 0, 1000), kw("a", 1000, 2000))
        ),
        payload("a", 1),
    )
    with pytest.raises(ReduceError, match="invalid number of windows in the request - 2"):
        manager.create_task(request)


def test_append_rejects_no_windows():
    manager = SessionReduceTaskManager(SessionSumCreator())
    request = SessionReduceRequest(SessionWindowOperation(Event.APPEND, ()))
    with pytest.raises(ReduceError, match="append operation error"):
        manager.append_to_task(request)


def test_expand_requires_two_windows():
    manager = SessionReduceTaskManager(SessionSumCreator())
    with pytest.raises(ReduceError, match="expected exactly two windows"):
        manager.expand_task(append_("a", 0, 1000, 1))


def test_expand_unknown_task():
    manager = SessionReduceTaskManager(SessionSumCreator())
    with pytest.raises(ReduceError, match="task not found for key - 0:1000:a"):
        manager.expand_task(expand_("a", (0, 1000), (0, 2000), 1))


def test_merge_unknown_task():
    manager = SessionReduceTaskManager(SessionSumCreator())
    manager.create_task(open_("a", 1000, 2000, 5))
    with pytest.raises(ReduceError, match="task not found for 0:1000:a"):
        manager.merge_tasks(merge_("a", (0, 1000), (1000, 2000)))
    manager.close_task(close_(kw("a", 1000, 2000)))
    manager.wait_all()
    out = list(manager.iter_responses())
    assert [r.result.value for r in out if not r.eof] == [b"5"]


def test_manager_close_and_collect():
    manager = SessionReduceTaskManager(SessionSumCreator())
    manager.create_task(open_("k", 0, 1000, 3))
    manager.append_to_task(append_("k", 0, 1000, 4))
    manager.close_task(close_(kw("k", 0, 1000)))
    manager.wait_all()
    out = list(manager.iter_responses())
    assert out == [
        SessionReduceResponse(
            result=Result(keys=("k_test",), value=b"7"), keyed_window=kw("k", 0, 1000)
        ),
        SessionReduceResponse(keyed_window=kw("k", 0, 1000), eof=True),
    ]


def test_handler_failure_signals_shutdown_and_raises():
    calls = []
    service = SessionReduceService(FailingCreator(), on_shutdown=lambda: calls.append(1))
    requests = [open_("a", 0, 1000, 1), close_(kw("a", 0, 1000))]
    with pytest.raises(ReduceError, match="boom"):
        service.session_reduce_fn(requests, lambda response: None)
    assert calls == [1]


def test_send_failure_raises():
    service = SessionReduceService(SessionSumCreator())

    def send(response):
        raise OSError("stream closed")

    requests = [open_("a", 0, 1000, 1), close_(kw("a", 0, 1000))]
    with pytest.raises(ReduceError, match="stream closed"):
        service.session_reduce_fn(requests, send)