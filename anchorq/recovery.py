"""
Issuance entry point and operator recovery operations.

Resends go through the queue as fresh anchor jobs; verifies ask the chain
directly and apply the same projection the monitor jobs use.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from . import projector
from .errors import AnchorError, Conflict, InvalidState
from .logging import get_logger
from .models import COMPLETED, ERROR, PENDING, PROCESSING, TERMINAL_STATUSES, IssuanceRecord, Receipt

log = get_logger(__name__)


@dataclass
class VerifyResult:
    record_id: str
    transaction_handle: Optional[str]
    status: str
    note: str
    receipt: Optional[Receipt] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.receipt is not None


class AnchorService:
    def __init__(self, engine, store, chain):
        self.engine = engine
        self.store = store
        self.chain = chain

    def issue(self, issuer: str, title: str, metadata_ref: str, record_id: Optional[str] = None):
        """Create a pending record and queue its anchoring. Returns (record, job_id)."""
        record = self.store.create(
            issuer=issuer, title=title, metadata_ref=metadata_ref, record_id=record_id
        )
        job_id = self._anchor(record)
        return record, job_id

    def _anchor(self, record: IssuanceRecord) -> str:
        return self.engine.add_anchor_job(record.id, record.issuer, record.title, record.metadata_ref)

    # ---------- Resend ----------
    def resend_one(self, record_id: str, force: bool = False) -> str:
        record = self.store.get_by_id(record_id)
        if record.status == COMPLETED:
            raise InvalidState(f"Record '{record_id}' is already completed.")
        if record.transaction_handle and record.status != ERROR and not force:
            raise InvalidState(
                f"Record '{record_id}' already has transaction {record.transaction_handle}; "
                "verify it or resend with force."
            )
        job_id = self._anchor(record)
        log.info("resend_requested", record_id=record_id, job_id=job_id, previous_status=record.status)
        return job_id

    def resend_all_pending(self, only_failed: bool = False) -> Dict[str, str]:
        """Anchor jobs for every record that never got a transaction out.

        The in-flight guard only sees this process's engine. A caller running
        beside ``serve`` should pass ``only_failed=True``: ``error`` records are
        the only ones no running worker can still be holding.
        """
        queued = {}
        for record in self.store.list(has_handle=False):
            if record.status == COMPLETED:
                continue
            if only_failed and record.status != ERROR:
                continue
            try:
                queued[record.id] = self._anchor(record)
            except Conflict as e:
                log.info("resend_skipped_in_flight", record_id=record.id, job_id=e.job_id)
        return queued

    def pickup_pending(self) -> Dict[str, str]:
        queued = {}
        for record in self.store.list(status=PENDING):
            if self.engine.is_in_flight(record.id):
                continue
            try:
                queued[record.id] = self._anchor(record)
            except Conflict:
                continue
        return queued

    def monitor_all_processing(self, include_abandoned: bool = True) -> Dict[str, str]:
        """Monitor jobs for processing records holding a handle.

        With ``include_abandoned=False`` records already in flight here and
        records whose monitoring gave up are left alone; ``serve`` calls it
        that way every tick to pick up hand-offs made by other processes.
        """
        queued = {}
        for record in self.store.list(status=PROCESSING, has_handle=True):
            if not include_abandoned:
                if self.engine.is_in_flight(record.id) or projector.needs_manual_verification(record.note):
                    continue
            try:
                queued[record.id] = self.engine.add_monitoring_job(record.id, record.transaction_handle)
            except Conflict as e:
                log.info("monitor_skipped_in_flight", record_id=record.id, job_id=e.job_id)
        return queued

    # ---------- Verify ----------
    def verify_one(self, record_id: str) -> VerifyResult:
        record = self.store.get_by_id(record_id)
        handle = record.transaction_handle
        if not handle:
            raise InvalidState(f"Record '{record_id}' has no transaction to verify.")

        receipt = self.chain.get_receipt(handle)
        if receipt is None:
            log.info("verify_not_mined", record_id=record_id, handle=handle)
            return VerifyResult(record_id, handle, record.status, record.note or "")

        p = projector.from_receipt(receipt)
        updated = self.store.update_status(record_id, p.status, p.note, handle)
        log.info("verify_applied", record_id=record_id, handle=handle, status=updated.status)
        return VerifyResult(record_id, handle, updated.status, updated.note or "", receipt)

    def verify_all_unconfirmed(self) -> List[VerifyResult]:
        results = []
        for record in self.store.list(has_handle=True):
            if record.status in TERMINAL_STATUSES:
                continue
            try:
                results.append(self.verify_one(record.id))
            except AnchorError as e:
                log.warning("verify_failed", record_id=record.id, error=str(e))
                results.append(VerifyResult(
                    record.id, record.transaction_handle, record.status, record.note or "", error=str(e)
                ))
        return results
