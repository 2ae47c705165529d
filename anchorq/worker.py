import signal
import threading

from .chain import Web3ChainClient
from .engine import QueueEngine
from .logging import get_logger
from .recovery import AnchorService
from .repository import RecordStore

log = get_logger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        log.info("signal_received", signum=signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            pass


def build_service(db_path=None, chain=None, **engine_kwargs) -> AnchorService:
    """Composition root: one store, one chain client, one engine."""
    store = RecordStore(db_path)
    chain = chain or Web3ChainClient.from_env()
    engine = QueueEngine(chain, store, store.settings(), **engine_kwargs)
    return AnchorService(engine, store, chain)


def serve(service: AnchorService):
    """Run the engine until SIGINT/SIGTERM.

    Each tick anchors new pending records and resumes monitoring of hand-offs
    left by other processes (CLI resends).
    """
    setup_signal_handlers()
    engine = service.engine
    engine.start()
    try:
        resumed = service.monitor_all_processing()
        log.info("worker_started", resumed_monitors=len(resumed))
        while not _stop.is_set():
            try:
                picked = service.pickup_pending()
                if picked:
                    log.info("pending_picked_up", count=len(picked))
                monitored = service.monitor_all_processing(include_abandoned=False)
                if monitored:
                    log.info("hand_offs_picked_up", count=len(monitored))
            except Exception:
                log.exception("pickup_failed")
            _stop.wait(engine.settings.tick_interval_seconds)
    finally:
        _stop.set()
        # waits for the job in hand so a broadcast handle is persisted
        engine.stop()
        log.info("worker_stopped", stats={k: v for k, v in engine.get_stats().items() if k != "jobs"})
