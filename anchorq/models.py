from dataclasses import dataclass, field
from typing import ClassVar, Optional, Union

from .utils import now_iso, new_job_id

# Record States
PENDING = "pending"
PROCESSING = "processing"
RETRYING = "retrying"
COMPLETED = "completed"
ERROR = "error"

STATUSES = (PENDING, PROCESSING, RETRYING, COMPLETED, ERROR)
TERMINAL_STATUSES = (COMPLETED, ERROR)

# Job kinds
ANCHOR = "anchor"
MONITOR = "monitor"


@dataclass
class IssuanceRecord:
    id: str
    issuer: str
    title: str
    metadata_ref: str
    status: str = PENDING
    note: Optional[str] = None
    transaction_handle: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "IssuanceRecord":
        return cls(
            id=row["id"],
            issuer=row["issuer"],
            title=row["title"],
            metadata_ref=row["metadata_ref"],
            status=row["status"],
            note=row["note"],
            transaction_handle=row["transaction_handle"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class AnchorJob:
    """Submit a new mint transaction for a record."""
    record_id: str
    issuer: str
    title: str
    metadata_ref: str
    attempt_count: int = 0
    id: str = field(default_factory=new_job_id)
    created_at: str = field(default_factory=now_iso)

    kind: ClassVar[str] = ANCHOR


@dataclass
class MonitorJob:
    """Poll an already-broadcast transaction until it has a receipt."""
    record_id: str
    transaction_handle: str
    check_attempts: int = 0
    max_check_attempts: int = 20
    id: str = field(default_factory=lambda: new_job_id(prefix="monitor"))
    created_at: str = field(default_factory=now_iso)

    kind: ClassVar[str] = MONITOR


Job = Union[AnchorJob, MonitorJob]


@dataclass(frozen=True)
class Receipt:
    transaction_handle: str
    status_ok: bool
    block_ref: Optional[int] = None
    gas_used: Optional[int] = None
