"""
In-memory anchoring queue.

One drain runs at a time and handles jobs strictly one by one, so a single
signing key never has two submissions racing for a nonce. Jobs that need to
run again later go into a delay heap and are promoted back to the ready queue
by the drain loop or by the periodic ticker once they are due.
"""

import heapq
import itertools
import random
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import projector
from .config import Settings
from .errors import (
    ConfirmationTimeout,
    Conflict,
    NotFound,
    QueryError,
    SubmissionError,
)
from .logging import get_logger
from .models import AnchorJob, Job, MonitorJob, Receipt
from .utils import backoff_delay

log = get_logger(__name__)


class Outcome(str, Enum):
    COMPLETED = "completed"      # receipt ok
    REVERTED = "reverted"        # receipt with failure status
    HANDED_OFF = "handed_off"    # anchor timed out waiting, monitor job took over
    RETRYING = "retrying"        # submission failed, job rescheduled
    EXHAUSTED = "exhausted"      # submission retries used up
    RESCHEDULED = "rescheduled"  # monitor poll found nothing yet
    ABANDONED = "abandoned"      # monitor checks used up
    DROPPED = "dropped"          # record gone

    @property
    def lives_on(self) -> bool:
        return self in (Outcome.RETRYING, Outcome.RESCHEDULED)


class Clock:
    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)


def spawn_thread(fn: Callable[[], None]):
    threading.Thread(target=fn, name="anchorq-drain", daemon=True).start()


class QueueEngine:
    def __init__(
        self,
        chain,
        store,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        spawn: Callable[[Callable[[], None]], None] = spawn_thread,
        rng: Optional[random.Random] = None,
    ):
        self.chain = chain
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock or Clock()
        self._spawn = spawn
        self._rng = rng or random.Random()

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._ready = deque()
        self._delayed = []  # heap of (due, seq, job)
        self._seq = itertools.count()
        self._in_flight: Dict[str, Job] = {}
        self._active: Optional[Job] = None
        self._draining = False

        self.total_completed = 0
        self.total_failed = 0

        self._stop = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    # ---------- Enqueue ----------
    def enqueue(self, job: Job) -> str:
        with self._lock:
            self._ready.append(job)
            self._in_flight.setdefault(job.record_id, job)
            start = not self._draining
            self._changed.notify_all()
        log.info("job_enqueued", job_id=job.id, kind=job.kind, record_id=job.record_id)
        if start:
            self._kick()
        return job.id

    def add_anchor_job(self, record_id: str, issuer: str, title: str, metadata_ref: str) -> str:
        with self._lock:
            current = self._in_flight.get(record_id)
            if current is not None:
                raise Conflict(record_id, current.id)
            job = AnchorJob(record_id=record_id, issuer=issuer, title=title, metadata_ref=metadata_ref)
            self._in_flight[record_id] = job
        return self.enqueue(job)

    def add_monitoring_job(self, record_id: str, transaction_handle: str) -> str:
        with self._lock:
            current = self._in_flight.get(record_id)
            if current is not None:
                if isinstance(current, MonitorJob) and current.transaction_handle == transaction_handle:
                    return current.id
                raise Conflict(record_id, current.id)
            job = MonitorJob(
                record_id=record_id,
                transaction_handle=transaction_handle,
                max_check_attempts=self.settings.max_check_attempts,
            )
            self._in_flight[record_id] = job
        return self.enqueue(job)

    def _schedule(self, job: Job, delay: float):
        with self._lock:
            heapq.heappush(self._delayed, (self.clock.now() + delay, next(self._seq), job))
            self._changed.notify_all()
        log.info("job_rescheduled", job_id=job.id, kind=job.kind, record_id=job.record_id, delay=round(delay, 2))

    def _promote_due(self) -> int:
        moved = 0
        with self._lock:
            now = self.clock.now()
            while self._delayed and self._delayed[0][0] <= now:
                _, _, job = heapq.heappop(self._delayed)
                self._ready.append(job)
                moved += 1
        return moved

    def _release(self, job: Job):
        with self._lock:
            if self._in_flight.get(job.record_id) is job:
                del self._in_flight[job.record_id]
            self._changed.notify_all()

    def _kick(self):
        try:
            self._spawn(self.drain)
        except Exception:
            # the ticker picks the queue up later
            log.exception("drain_spawn_failed")

    # ---------- Drain ----------
    def drain(self):
        with self._lock:
            if self._draining:
                log.debug("drain_already_running")
                return
            self._draining = True
        log.info("drain_started", pending=len(self._ready) + len(self._delayed))

        try:
            while True:
                with self._lock:
                    self._promote_due()
                    if not self._ready or self._stop.is_set():
                        # cleared under the same lock enqueue() reads it with
                        self._draining = False
                        self._changed.notify_all()
                        break
                    job = self._ready.popleft()
                    self._active = job

                self._dispatch(job)

                with self._lock:
                    self._active = None
                    self._changed.notify_all()
                    more = bool(self._ready) and not self._stop.is_set()
                if more:
                    self.clock.sleep(self.settings.job_pause_seconds)
        except BaseException:
            with self._lock:
                self._active = None
                self._draining = False
                self._changed.notify_all()
            raise
        log.info("drain_finished")

    def tick(self):
        """Periodic trigger: promote due jobs and drain if anything is ready."""
        with self._lock:
            self._promote_due()
            start = bool(self._ready) and not self._draining
        if start:
            self._kick()

    def _dispatch(self, job: Job) -> Optional[Outcome]:
        log.info("job_dispatch", job_id=job.id, kind=job.kind, record_id=job.record_id)
        try:
            try:
                if isinstance(job, AnchorJob):
                    outcome = self._run_anchor(job)
                else:
                    outcome = self._run_monitor(job)
            except NotFound:
                log.warning("record_missing_job_dropped", job_id=job.id, record_id=job.record_id)
                outcome = Outcome.DROPPED
            except Exception as e:
                log.exception("job_unexpected_error", job_id=job.id, record_id=job.record_id)
                if isinstance(job, AnchorJob):
                    outcome = self._retry_or_fail(job, e)
                else:
                    outcome = self._check_later(job, error=e)
        except Exception:
            # the failure path itself failed (store down); drop rather than spin
            log.exception("job_failure_path_error", job_id=job.id, record_id=job.record_id)
            outcome = Outcome.DROPPED

        with self._lock:
            if outcome is Outcome.COMPLETED:
                self.total_completed += 1
            elif outcome in (Outcome.REVERTED, Outcome.EXHAUSTED):
                self.total_failed += 1
        if not outcome.lives_on:
            self._release(job)
        log.info("job_done", job_id=job.id, kind=job.kind, record_id=job.record_id, outcome=outcome.value)
        return outcome

    def _update(self, record_id: str, p: projector.Projection, handle: Optional[str] = None):
        self.store.update_status(record_id, p.status, p.note, handle)
        log.info("record_status", record_id=record_id, status=p.status, note=p.note, handle=handle)

    # ---------- Anchor jobs ----------
    def _run_anchor(self, job: AnchorJob) -> Outcome:
        self._update(job.record_id, projector.submitting(job.attempt_count, self.settings.max_retries))
        try:
            handle = self.chain.submit(job.issuer, job.title, job.metadata_ref)
        except SubmissionError as e:
            log.warning("submission_failed", job_id=job.id, record_id=job.record_id,
                        attempt=job.attempt_count + 1, error=str(e))
            return self._retry_or_fail(job, e)

        # a transaction is out: from here on the job never goes back to submit
        try:
            return self._confirm(job, handle)
        except NotFound:
            raise
        except Exception:
            log.exception("confirmation_error", job_id=job.id, record_id=job.record_id, handle=handle)
            self._hand_off(job, handle)
            return Outcome.HANDED_OFF

    def _confirm(self, job: AnchorJob, handle: str) -> Outcome:
        # persisted before waiting so a crash never loses the handle
        self._update(job.record_id, projector.submitted(handle), handle)

        timeout = self.settings.confirmation_timeout_seconds
        log.info("awaiting_confirmation", job_id=job.id, handle=handle, timeout=timeout)
        try:
            receipt = self.chain.wait_for_receipt(handle, timeout)
        except (ConfirmationTimeout, QueryError) as e:
            log.warning("confirmation_delayed", job_id=job.id, record_id=job.record_id,
                        handle=handle, error=str(e))
            self._update(job.record_id, projector.confirmation_delayed(handle), handle)
            self._hand_off(job, handle)
            return Outcome.HANDED_OFF
        return self._apply_receipt(job.record_id, receipt)

    def _hand_off(self, job: AnchorJob, handle: str) -> str:
        with self._lock:
            current = self._in_flight.get(job.record_id)
            if isinstance(current, MonitorJob) and current.transaction_handle == handle:
                return current.id
            monitor = MonitorJob(
                record_id=job.record_id,
                transaction_handle=handle,
                max_check_attempts=self.settings.max_check_attempts,
            )
            # ownership of the record moves to the monitor job atomically
            self._in_flight[job.record_id] = monitor
        return self.enqueue(monitor)

    def _retry_or_fail(self, job: AnchorJob, error: Exception) -> Outcome:
        p = projector.submission_failed(job.attempt_count, self.settings.max_retries, error)
        if not p.reschedule:
            self._update(job.record_id, p)
            log.error("job_exhausted", job_id=job.id, record_id=job.record_id,
                      attempts=job.attempt_count + 1)
            return Outcome.EXHAUSTED

        self._update(job.record_id, p)
        job.attempt_count += 1
        s = self.settings
        self._schedule(job, backoff_delay(
            s.retry_delay_seconds, job.attempt_count,
            factor=s.backoff_base, cap=s.max_backoff_seconds, jitter=s.jitter, rng=self._rng,
        ))
        return Outcome.RETRYING

    # ---------- Monitor jobs ----------
    def _run_monitor(self, job: MonitorJob) -> Outcome:
        log.info("checking_receipt", job_id=job.id, handle=job.transaction_handle,
                 attempt=job.check_attempts + 1, max_attempts=job.max_check_attempts)
        try:
            receipt = self.chain.get_receipt(job.transaction_handle)
        except QueryError as e:
            log.warning("receipt_query_failed", job_id=job.id, handle=job.transaction_handle, error=str(e))
            return self._check_later(job, error=e)
        if receipt is None:
            return self._check_later(job)
        return self._apply_receipt(job.record_id, receipt)

    def _check_later(self, job: MonitorJob, error: Optional[Exception] = None) -> Outcome:
        job.check_attempts += 1
        p = projector.monitor_pending(job.check_attempts, job.max_check_attempts,
                                      job.transaction_handle, error)
        if not p.reschedule:
            self._update(job.record_id, p, job.transaction_handle)
            log.warning("monitoring_abandoned", job_id=job.id, record_id=job.record_id,
                        handle=job.transaction_handle, checks=job.check_attempts)
            return Outcome.ABANDONED

        s = self.settings
        base = s.monitor_error_delay_seconds if error else s.monitor_interval_seconds
        self._schedule(job, backoff_delay(
            base, job.check_attempts,
            factor=s.backoff_base, cap=s.max_backoff_seconds, jitter=s.jitter, rng=self._rng,
        ))
        return Outcome.RESCHEDULED

    def _apply_receipt(self, record_id: str, receipt: Receipt) -> Outcome:
        p = projector.from_receipt(receipt)
        self._update(record_id, p, receipt.transaction_handle)
        return Outcome.COMPLETED if receipt.status_ok else Outcome.REVERTED

    # ---------- Observability ----------
    def get_stats(self) -> dict:
        with self._lock:
            now = self.clock.now()
            ready = list(self._ready)
            delayed = sorted(self._delayed)
            active = self._active
            stats = {
                "pending": len(ready) + len(delayed),
                "monitoring_jobs": 0,
                "normal_jobs": 0,
                "is_draining": self._draining,
                "active_job": active.id if active else None,
                "total_completed": self.total_completed,
                "total_failed": self.total_failed,
                "jobs": [],
            }
        entries = [(job, "ready", 0.0) for job in ready]
        entries += [(job, "delayed", max(due - now, 0.0)) for due, _, job in delayed]
        for job, state, due_in in entries:
            if isinstance(job, MonitorJob):
                stats["monitoring_jobs"] += 1
            else:
                stats["normal_jobs"] += 1
            stats["jobs"].append(_summary(job, state, due_in))
        return stats

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            if self._active is not None and self._active.id == job_id:
                return self._active
            for job in itertools.chain(self._ready, (j for _, _, j in self._delayed)):
                if job.id == job_id:
                    return job
        return None

    def is_in_flight(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._in_flight

    def clear(self) -> int:
        """Drop every queued or delayed job. The active one finishes normally."""
        with self._lock:
            dropped = list(self._ready) + [j for _, _, j in self._delayed]
            self._ready.clear()
            self._delayed = []
            for job in dropped:
                if self._in_flight.get(job.record_id) is job:
                    del self._in_flight[job.record_id]
            self._changed.notify_all()
        log.warning("queue_cleared", dropped=len(dropped))
        return len(dropped)

    def wait_idle(self, timeout: Optional[float] = None, include_monitors: bool = True) -> bool:
        """Block until no job is in flight (optionally ignoring monitor jobs)."""
        def idle():
            jobs = self._in_flight.values()
            if not include_monitors:
                jobs = [j for j in jobs if isinstance(j, AnchorJob)]
            return not jobs

        with self._changed:
            return self._changed.wait_for(idle, timeout)

    # ---------- Ticker ----------
    def start(self):
        if self._ticker and self._ticker.is_alive():
            return
        self._stop.clear()
        self._ticker = threading.Thread(target=self._tick_loop, name="anchorq-ticker", daemon=True)
        self._ticker.start()
        log.info("engine_started", tick_interval=self.settings.tick_interval_seconds)

    def _tick_loop(self):
        while not self._stop.wait(self.settings.tick_interval_seconds):
            try:
                self.tick()
            except Exception:
                log.exception("tick_error")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop the ticker and let the running job finish; queued jobs stay queued.

        Returns False if the active job was still running after ``timeout``.
        """
        self._stop.set()
        if self._ticker:
            self._ticker.join(timeout)
            self._ticker = None
        with self._changed:
            settled = self._changed.wait_for(lambda: self._active is None and not self._draining, timeout)
            pending = len(self._ready) + len(self._delayed)
            active = self._active.id if self._active else None
        if settled:
            log.info("engine_stopped", pending=pending)
        else:
            log.warning("engine_stop_timed_out", pending=pending, active_job=active)
        return settled


def _summary(job: Job, state: str, due_in: float) -> dict:
    out = {
        "id": job.id,
        "kind": job.kind,
        "record_id": job.record_id,
        "state": state,
        "due_in": round(due_in, 3),
        "created_at": job.created_at,
    }
    if isinstance(job, MonitorJob):
        out["transaction_handle"] = job.transaction_handle
        out["check_attempts"] = job.check_attempts
    else:
        out["transaction_handle"] = None
        out["attempt_count"] = job.attempt_count
    return out
