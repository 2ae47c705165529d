"""
structlog setup for anchorq.

Quick start
-----------
    from anchorq.logging import setup_logging, get_logger

    setup_logging()  # call once on process start
    log = get_logger(__name__)
    log.info("job_enqueued", job_id="...", record_id="...")

Environment
-----------
- LOG_LEVEL: one of DEBUG, INFO, WARNING, ERROR (default: INFO)
- LOG_FORMAT: "console" (default) or "json"
"""

import logging
import os
from typing import Any, Dict, Optional

import structlog


REDACT_KEYS = {"private_key", "secret", "password", "token", "api_key"}


def _redact_secrets(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k in list(event_dict.keys()):
        if k.lower() in REDACT_KEYS and event_dict[k] is not None:
            event_dict[k] = "***"
    return event_dict


def setup_logging(
    *,
    service_name: str = "anchorq",
    level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """Configure structlog + stdlib logging. Safe to call more than once."""
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_format = (log_format or os.getenv("LOG_FORMAT") or "console").lower()

    def _ensure_service(_: Any, __: str, ev: Dict[str, Any]) -> Dict[str, Any]:
        ev.setdefault("service", service_name)
        return ev

    processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        _redact_secrets,
        _ensure_service,
    ]
    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True, sort_keys=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *processors,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    # web3 is chatty at DEBUG about every RPC round trip
    logging.getLogger("web3").setLevel(os.getenv("LOG_LEVEL_WEB3", "WARNING"))
    logging.getLogger("urllib3").setLevel("WARNING")


def get_logger(name: Optional[str] = None):
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
