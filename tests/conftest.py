import asyncio
import json
import os
import tempfile

import pytest

# Point module-level settings at a scratch directory before the app is imported.
_scratch = tempfile.mkdtemp(prefix="earthforus-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_scratch, "earthforus.db"))
os.environ.setdefault("ERROR_LOG_PATH", os.path.join(_scratch, "ERRORS_LOGS.md"))

from earthforus import database  # noqa: E402
from earthforus.services.error_logger import ErrorLog  # noqa: E402
from earthforus.services.telemetry import ChatTelemetry  # noqa: E402


class RecordingTelemetry(ChatTelemetry):
    """Telemetry port that keeps every event instead of logging it."""

    def __init__(self, error_log=None):
        super().__init__(error_log=error_log)
        self.events = []

    def debug(self, event, **fields):
        self.events.append(("debug", event, fields))

    def info(self, event, **fields):
        self.events.append(("info", event, fields))

    def warning(self, event, **fields):
        self.events.append(("warning", event, fields))

    def error(self, event, error=None, **fields):
        self.events.append(("error", event, dict(fields, error=error)))

    def named(self, event):
        return [fields for _, name, fields in self.events if name == event]


class FakeTransport:
    """Server-side transport double: records frames as parsed JSON."""

    def __init__(self, writable=True, fail=False):
        self.writable = writable
        self.fail = fail
        self.frames = []

    def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket write failed")
        self.frames.append(json.loads(text))

    def of_type(self, message_type):
        return [f for f in self.frames if f["type"] == message_type]


class FakeSocket:
    """Client-side socket double with the slice of the websockets API we use."""

    def __init__(self):
        self.sent = []
        self.close_code = None
        self.fail_send = False
        self._inbox = asyncio.Queue()

    async def send(self, text):
        if self.fail_send:
            raise ConnectionError("broken pipe")
        self.sent.append(json.loads(text))

    def feed(self, frame):
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, code):
        """Simulate the peer closing the connection with *code*."""
        self.close_code = code
        self._inbox.put_nowait(None)

    def fail(self, error):
        """Make the next read raise *error*."""
        self._inbox.put_nowait(error)

    async def close(self, code=1000):
        if self.close_code is None:
            self.close_code = code
            self._inbox.put_nowait(None)

    def sent_of_type(self, message_type):
        return [f for f in self.sent if f["type"] == message_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Async connector returning FakeSockets; fails the first *fail_times* calls."""

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.sockets = []

    async def __call__(self, url):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def socket(self):
        return self.sockets[-1]


async def wait_until(predicate, timeout=2.0):
    """Yield to the loop until *predicate()* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def error_log(tmp_path):
    log = ErrorLog(str(tmp_path / "ERRORS_LOGS.md"))
    yield log
    log.close()


@pytest.fixture
def app(tmp_path, monkeypatch, error_log):
    from earthforus.main import create_app

    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "test.db"))
    return create_app(error_log=error_log)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    # one portal for the whole test so every socket shares the same event loop
    with TestClient(app) as test_client:
        yield test_client
