from dataclasses import dataclass, fields
from typing import Dict

DEFAULT_CONFIG = {
    "max_retries": "3",
    "retry_delay_seconds": "5",
    "backoff_base": "2",
    "max_backoff_seconds": "3600",
    "jitter": "0.1",
    "confirmation_timeout_seconds": "300",
    "monitor_interval_seconds": "600",
    "monitor_error_delay_seconds": "300",
    "max_check_attempts": "20",
    "job_pause_seconds": "1",
    "tick_interval_seconds": "10",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DEFAULT_DB_FILE = "anchorq.db"
DEFAULT_RPC_URL = "https://polygon-rpc.com"


@dataclass(frozen=True)
class Settings:
    max_retries: int = 3
    retry_delay_seconds: float = 5
    backoff_base: float = 2
    max_backoff_seconds: float = 3600
    jitter: float = 0.1
    confirmation_timeout_seconds: float = 300
    monitor_interval_seconds: float = 600
    monitor_error_delay_seconds: float = 300
    max_check_attempts: int = 20
    job_pause_seconds: float = 1
    tick_interval_seconds: float = 10

    @classmethod
    def from_config(cls, cfg: Dict[str, str]) -> "Settings":
        """Build settings from the string values stored in the config table."""
        values = {}
        for f in fields(cls):
            raw = cfg.get(f.name, DEFAULT_CONFIG[f.name])
            try:
                value = int(raw) if f.type in (int, "int") else float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{f.name} must be a number, got {raw!r}")
            if value < 0:
                raise ValueError(f"{f.name} must be >= 0")
            values[f.name] = value
        if not 0 <= values["jitter"] <= 1:
            raise ValueError("jitter must be between 0 and 1")
        if values["tick_interval_seconds"] <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        return cls(**values)
