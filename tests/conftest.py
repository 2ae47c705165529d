from collections import deque
from typing import Optional

import pytest

from anchorq.config import Settings
from anchorq.db import init_db
from anchorq.engine import QueueEngine
from anchorq.models import Receipt
from anchorq.recovery import AnchorService
from anchorq.repository import RecordStore


class FakeClock:
    """Monotonic clock whose sleep() just moves time forward."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.slept = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float):
        self.slept.append(seconds)
        self.t += seconds

    def advance(self, seconds: float):
        self.t += seconds


class FakeChain:
    """
    Scripted chain client. Each script is a queue of results consumed in order;
    an Exception instance is raised, anything else returned. When a script runs
    dry the call succeeds (new handle / ok receipt).
    """

    def __init__(self):
        self.submit_script = deque()
        self.wait_script = deque()
        self.receipt_script = deque()
        self.submits = []
        self.waits = []
        self.receipt_calls = []
        self.on_wait = None

    @staticmethod
    def ok(handle: str, block: int = 42) -> Receipt:
        return Receipt(transaction_handle=handle, status_ok=True, block_ref=block)

    @staticmethod
    def reverted(handle: str, block: int = 42) -> Receipt:
        return Receipt(transaction_handle=handle, status_ok=False, block_ref=block)

    @staticmethod
    def _next(script, default):
        if not script:
            return default
        result = script.popleft()
        if isinstance(result, Exception):
            raise result
        return result

    def submit(self, issuer, title, metadata_ref):
        self.submits.append((issuer, title, metadata_ref))
        return self._next(self.submit_script, f"0x{len(self.submits):064x}")

    def wait_for_receipt(self, handle, timeout):
        self.waits.append((handle, timeout))
        if self.on_wait:
            self.on_wait(handle)
        result = self._next(self.wait_script, None)
        return result if result is not None else self.ok(handle)

    def get_receipt(self, handle) -> Optional[Receipt]:
        self.receipt_calls.append(handle)
        if not self.receipt_script:
            return self.ok(handle)
        return self._next(self.receipt_script, None)


class RecordingStore:
    """Wraps a RecordStore and keeps every status write in order."""

    def __init__(self, store):
        self._store = store
        self.history = []

    def update_status(self, record_id, status, note="", handle=None):
        self.history.append((record_id, status, note, handle))
        return self._store.update_status(record_id, status, note, handle)

    def statuses(self, record_id):
        return [s for rid, s, _, _ in self.history if rid == record_id]

    def __getattr__(self, name):
        return getattr(self._store, name)


def inline(fn):
    fn()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "anchorq.sqlite")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    return RecordingStore(RecordStore(db_path))


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jitter=0, backoff_base=1, job_pause_seconds=1)


@pytest.fixture
def engine(chain, store, settings, clock):
    return QueueEngine(chain, store, settings, clock=clock, spawn=inline)


@pytest.fixture
def service(engine, store, chain):
    return AnchorService(engine, store, chain)


@pytest.fixture
def make_record(store):
    def _make(record_id=None, issuer="Faculty of Science", title="BSc Physics", metadata_ref="ipfs://meta/1"):
        return store.create(issuer=issuer, title=title, metadata_ref=metadata_ref, record_id=record_id)
    return _make
