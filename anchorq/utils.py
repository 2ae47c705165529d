import random
import secrets
import time
from datetime import datetime, timezone
from typing import Optional


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_job_id(prefix: Optional[str] = None) -> str:
    """Creation time in ms plus a random suffix, e.g. '1730884354123-9f2c1ab0'."""
    stamp = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return f"{prefix}_{stamp}" if prefix else stamp


def new_record_id() -> str:
    return secrets.token_hex(12)


def backoff_delay(
    base: float,
    attempt: int,
    *,
    factor: float = 2,
    cap: float = 3600,
    jitter: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential delay for the n-th (1-based) retry: base * factor**(n-1),
    capped at max(base, cap), then shortened by up to `jitter` (0..1) of itself.
    """
    delay = base * (factor ** max(attempt - 1, 0))
    delay = min(delay, max(base, cap))
    if jitter > 0:
        r = (rng or random).random()
        delay -= delay * jitter * r
    return delay
