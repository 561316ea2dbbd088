"""
hwsigner - Structured Logging Configuration

Signing sessions emit one JSON object per record. Library modules only create
module loggers and attach an ``event`` name through ``extra``; the CLI (or a
host application embedding hwsigner) calls setup_logging once.

Usage:
    from hwsigner.core.logging_config import setup_logging

    setup_logging(level="DEBUG")
    logger.info("Typed data signed", extra={"event": "ledger.sign_typed.done"})
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(levelname)s %(name)s %(message)s"


class SigningLogFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for signing session records.

    Every record carries the service, environment, event name and call site.
    Byte values passed through ``extra`` (payloads, hashes) are rendered as
    0x-prefixed hex so the output stays valid JSON.
    """

    def __init__(self, environment: str = "production", service_name: str = "hwsigner"):
        super().__init__(fmt=LOG_FORMAT, rename_fields={"levelname": "level"})
        self.environment = environment
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record.setdefault("event", "log")
        log_record["level"] = str(log_record.get("level", record.levelname)).lower()
        log_record["service"] = self.service_name
        log_record["environment"] = self.environment
        log_record["source"] = f"{record.module}:{record.funcName}:{record.lineno}"

        for key, value in list(log_record.items()):
            if isinstance(value, (bytes, bytearray)):
                log_record[key] = "0x" + bytes(value).hex()


def _build_handlers(
    formatter: logging.Formatter,
    log_file: Optional[str],
    enable_console: bool,
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    # stdout carries command output (signatures), so records go to stderr
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    name: str = "hwsigner",
    log_file: Optional[str] = None,
    level: str = "INFO",
    environment: str = "production",
    enable_console: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Route the package loggers to JSON handlers.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        name: Root logger of the package
        log_file: Optional JSON log file, rotated at ``max_bytes``
        level: Logging level name
        environment: Environment tag added to every record
        enable_console: Whether to log to stderr
        max_bytes: Log file size that triggers rotation
        backup_count: Rotated files to keep

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = SigningLogFormatter(environment=environment, service_name=name.split(".")[0])
    try:
        handlers = _build_handlers(formatter, log_file, enable_console, max_bytes, backup_count)
    except OSError as e:
        handlers = _build_handlers(formatter, None, enable_console, max_bytes, backup_count)
        for handler in handlers:
            logger.addHandler(handler)
        logger.warning(
            "Could not open log file %s: %s",
            log_file,
            e,
            extra={"event": "logging.file_unavailable"},
        )
        return logger

    for handler in handlers:
        logger.addHandler(handler)
    return logger
