import threading
import time

import pytest

from anchorq import worker
from anchorq.db import connect_db
from anchorq.models import COMPLETED, ERROR, PROCESSING
from anchorq.repository import set_config
from anchorq.worker import build_service, serve

from conftest import FakeChain


def wait_until(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.02)
    return cond()


@pytest.fixture
def fast_db(db_path):
    conn = connect_db(db_path)
    try:
        set_config(conn, "tick_interval_seconds", "0.05")
        set_config(conn, "job_pause_seconds", "0")
    finally:
        conn.close()
    return db_path


@pytest.fixture
def stop_event(monkeypatch):
    event = threading.Event()
    monkeypatch.setattr(worker, "_stop", event)
    return event


def start_serving(service):
    thread = threading.Thread(target=serve, args=(service,), daemon=True)
    thread.start()
    return thread


def test_serve_picks_up_pending_records_until_stopped(fast_db, stop_event):
    chain = FakeChain()
    service = build_service(fast_db, chain=chain)
    service.store.create(issuer="Registrar", title="Diploma", metadata_ref="ipfs://w1", record_id="w1")

    thread = start_serving(service)
    # registered while the worker is already running
    service.store.create(issuer="Registrar", title="Transcript", metadata_ref="ipfs://w2", record_id="w2")

    assert wait_until(lambda: all(service.store.get_by_id(r).status == COMPLETED for r in ("w1", "w2")))

    threading.Timer(0.05, stop_event.set).start()
    thread.join(5)
    assert not thread.is_alive()
    assert sorted(chain.submits) == [("Registrar", "Diploma", "ipfs://w1"),
                                     ("Registrar", "Transcript", "ipfs://w2")]
    stats = service.engine.get_stats()
    assert not stats["is_draining"]
    assert stats["active_job"] is None


def test_serve_monitors_hand_offs_made_elsewhere(fast_db, stop_event):
    chain = FakeChain()
    service = build_service(fast_db, chain=chain)
    store = service.store
    for rid in ("h1", "h2"):
        store.create(issuer="Registrar", title="Diploma", metadata_ref=f"ipfs://{rid}", record_id=rid)
        store.update_status(rid, ERROR, "Chain submission failed permanently")
    store.create(issuer="Registrar", title="Diploma", metadata_ref="ipfs://p1", record_id="p1")

    thread = start_serving(service)
    try:
        assert wait_until(lambda: store.get_by_id("p1").status == COMPLETED)

        # what a resend from another process leaves behind
        store.update_status("h2", PROCESSING, "Transaction 0xh2 still unconfirmed after 20 checks. "
                                              "Needs manual verification.", "0xh2")
        store.update_status("h1", PROCESSING, "Transaction 0xh1 sent but confirmation delayed. "
                                              "Monitoring...", "0xh1")

        assert wait_until(lambda: store.get_by_id("h1").status == COMPLETED)
    finally:
        stop_event.set()
        thread.join(5)

    assert "0xh1" in chain.receipt_calls
    assert "0xh2" not in chain.receipt_calls
    assert store.get_by_id("h2").status == PROCESSING
    assert len(chain.submits) == 1
