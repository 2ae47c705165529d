"""
Status projection: maps what the chain told us (a receipt, its absence, or an
error) plus the job's attempt counters onto the record's next status and note,
and says whether the job lives on.

Pure functions, no I/O.
"""

from dataclasses import dataclass
from typing import Optional

from .models import COMPLETED, ERROR, PROCESSING, RETRYING, Receipt

MANUAL_VERIFICATION = "Needs manual verification."


@dataclass(frozen=True)
class Projection:
    status: str
    note: str
    reschedule: bool = False


def submitting(attempt_count: int, max_retries: int) -> Projection:
    return Projection(
        PROCESSING,
        f"Sending transaction to the chain (attempt {attempt_count + 1}/{max_retries + 1})",
    )


def submitted(handle: str) -> Projection:
    return Projection(PROCESSING, f"Transaction {handle} sent, awaiting confirmation")


def from_receipt(receipt: Receipt) -> Projection:
    if receipt.status_ok:
        return Projection(COMPLETED, f"Transaction confirmed in block {receipt.block_ref}")
    return Projection(
        ERROR,
        f"Transaction {receipt.transaction_handle} reverted in block {receipt.block_ref}",
    )


def submission_failed(attempt_count: int, max_retries: int, error: Exception) -> Projection:
    """attempt_count is the number of failed attempts before this one."""
    if attempt_count < max_retries:
        return Projection(
            RETRYING,
            f"Chain submission failed, retrying ({attempt_count + 1}/{max_retries}): {error}",
            reschedule=True,
        )
    return Projection(
        ERROR,
        f"Chain submission failed permanently after {max_retries + 1} attempts: {error}",
    )


def confirmation_delayed(handle: str) -> Projection:
    return Projection(
        PROCESSING,
        f"Transaction {handle} sent but confirmation delayed. Monitoring...",
    )


def needs_manual_verification(note: Optional[str]) -> bool:
    return MANUAL_VERIFICATION in (note or "")


def monitor_pending(
    check_attempts: int,
    max_check_attempts: int,
    handle: str,
    error: Optional[Exception] = None,
) -> Projection:
    """check_attempts already counts the poll that just came back empty."""
    if check_attempts >= max_check_attempts:
        reason = f" Last error: {error}" if error else ""
        return Projection(
            PROCESSING,
            f"Transaction {handle} still unconfirmed after {check_attempts} checks. "
            f"{MANUAL_VERIFICATION}{reason}",
        )
    if error:
        note = f"Receipt query for {handle} failed ({check_attempts}/{max_check_attempts}): {error}"
    else:
        note = f"Transaction {handle} not mined yet ({check_attempts}/{max_check_attempts})"
    return Projection(PROCESSING, note, reschedule=True)
