"""Consolidated structured logging configuration for opctl."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from config import config
from models import AuditRecord, SecurityEvent

# Log file paths
LOG_DIR = config.logging.log_dir
LOG_PATH = LOG_DIR / "opctl.log"
AUDIT_LOG_PATH = LOG_DIR / "audit.log"
SECURITY_LOG_PATH = LOG_DIR / "security.log"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging with correlation IDs and extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with structured extra data."""
        log_data = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "extra": getattr(record, "extra", {}),
        }
        return json.dumps(log_data, default=str)


def setup_logger(
    name: str = "opctl",
    level: int | str = config.logging.log_level,
    log_path: Path = LOG_PATH,
    console: bool = config.logging.console_output,
) -> logging.Logger:
    """
    Configure structured logging with file and optional console output.

    - File output: JSON-formatted records to ``log_path``
    - Console output: Human-readable format for debugging

    Args:
        name: Logger name (default: "opctl")
        level: Logging level (default: LOG_LEVEL from the environment)
        log_path: Destination of the JSON log file
        console: Whether to also log to the console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers if already configured
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False

    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    if config.logging.json_format:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    return logger


def _record_to_dict(record: Any) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if hasattr(value, "value"):
            data[key] = value.value
    return data


class AuditSink:
    """Append-only consumer for security events and audit records.

    Events are written as JSON lines and never read back by the pipeline.
    """

    def __init__(
        self,
        audit_logger: Optional[logging.Logger] = None,
        security_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.audit_logger = audit_logger or setup_logger("opctl.audit", log_path=AUDIT_LOG_PATH, console=False)
        self.security_logger = security_logger or setup_logger(
            "opctl.security", log_path=SECURITY_LOG_PATH, console=False
        )

    def log_security_event(self, event: SecurityEvent) -> None:
        self.security_logger.warning("Security event", extra={"extra": _record_to_dict(event)})

    def log_audit(self, record: AuditRecord) -> None:
        self.audit_logger.info("Audit record", extra={"extra": _record_to_dict(record)})


# Initialize global logger instance
logger = setup_logger()
