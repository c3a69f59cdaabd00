"""Local logging setup for memtier.

``setup_memtier_logging`` attaches a daily file handler under
``<data dir>/logs/local-YYYY-MM-DD.log`` to the ``memtier`` logger.
``log_memory_event`` writes one line per memory lifecycle event so the
log can be grepped per tenant, user or operation.
"""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Optional

from memtier.config import get_memtier_home

EVENT_LOGGER = "memtier.events"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger(__name__)


def get_log_dir() -> Path:
    return get_memtier_home() / "logs"


def setup_memtier_logging(level: Optional[str] = None, log_dir: Optional[Path] = None) -> Path:
    """Attach today's log file to the ``memtier`` logger.

    Idempotent: calling it again with the same file does not add a second
    handler. Returns the log file path.
    """
    level_name = (level or os.environ.get("MEMTIER_LOG_LEVEL") or "INFO").upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level_name}")

    directory = log_dir or get_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"local-{date.today().isoformat()}.log"

    root = logging.getLogger("memtier")
    root.setLevel(numeric_level)

    target = log_file.resolve()
    for handler in root.handlers:
        if not isinstance(handler, logging.FileHandler):
            continue
        if Path(handler.baseFilename).resolve() == target:
            handler.setLevel(numeric_level)
            return log_file

    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    logger.debug("Logging to %s at %s", log_file, level_name)
    return log_file


def _format_fields(fields: dict) -> str:
    parts = []
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            continue
        if isinstance(value, float):
            value = f"{value:.3f}"
        parts.append(f"{key}={value}")
    return " ".join(parts)


def log_memory_event(
    operation: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    memory_id: Optional[str] = None,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log one lifecycle event (store, reinforce, reject, forget, consolidate)."""
    message = f"{operation} | tenant={tenant_id}"
    if user_id is not None:
        message += f" user={user_id}"
    if memory_id is not None:
        message += f" memory={memory_id}"
    extra = _format_fields(fields)
    if extra:
        message += f" | {extra}"
    logging.getLogger(EVENT_LOGGER).log(level, message)
