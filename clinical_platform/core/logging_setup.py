"""Logging setup with PII redaction.

Configures the Loguru logger with:
- Console output for development
- File output with PII redaction
- Structured JSON logging
- Separate error log with full tracebacks

Logging is installed by the logging service during platform startup, not on
import, so library users and tests keep loguru's default sink.
"""

import re
import sys
from pathlib import Path
from typing import List, Tuple, Union

from loguru import logger


_PII_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'), '[EMAIL]'),
    (re.compile(r'\b\d{3}-\d{2}-\d{4}\b'), '[SSN]'),
    (re.compile(r'\b(\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]\d{3}[-.\s]\d{4}\b'), '[PHONE]'),
    (re.compile(r'\b\d{9,}\b'), '[ID]'),
]

# Handler ids installed by setup_logging, removed again by shutdown_logging
_handler_ids: List[int] = []


def redact_pii(text: str) -> str:
    """Redact personal data (emails, SSNs, phone numbers, long ids) from text.

    Args:
        text: Text potentially containing PII

    Returns:
        Text with PII redacted
    """
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_pii_filter(record: dict) -> bool:
    """Loguru filter to redact PII from log messages.

    Args:
        record: Loguru record dictionary

    Returns:
        True to keep the record (always, but message is modified)
    """
    if 'message' in record:
        record['message'] = redact_pii(record['message'])

    if 'extra' in record:
        for key, value in record['extra'].items():
            if isinstance(value, str):
                record['extra'][key] = redact_pii(value)

    return True


def setup_logging(
    log_level: str = "INFO",
    log_dir: Union[str, Path] = Path("logs"),
    enable_file_logging: bool = True,
    enable_pii_redaction: bool = True
) -> None:
    """Configure application logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files
        enable_file_logging: Whether to write logs to files
        enable_pii_redaction: Whether to redact PII in file logs
    """
    logger.remove()
    _handler_ids.clear()

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    _handler_ids.append(logger.add(
        sys.stderr,
        format=console_format,
        level=log_level,
        colorize=True,
        backtrace=True,
        diagnose=False
    ))

    if enable_file_logging:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{name}:{function}:{line} - "
            "{message}"
        )
        redaction = redact_pii_filter if enable_pii_redaction else None

        _handler_ids.append(logger.add(
            log_dir / "application.log",
            format=file_format,
            level=log_level,
            rotation="10 MB",
            retention="30 days",
            compression="zip",
            backtrace=False,
            diagnose=False,
            filter=redaction,
            enqueue=True
        ))

        # Errors keep full tracebacks
        _handler_ids.append(logger.add(
            log_dir / "errors.log",
            format=file_format,
            level="ERROR",
            rotation="5 MB",
            retention="60 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
            filter=redaction,
            enqueue=True
        ))

        # One JSON object per line for automated parsing
        _handler_ids.append(logger.add(
            log_dir / "structured.jsonl",
            format="{message}",
            level=log_level,
            rotation="20 MB",
            retention="30 days",
            compression="zip",
            serialize=True,
            filter=redaction,
            enqueue=True
        ))

    logger.info(
        f"Logging configured: level={log_level}, file_logging={enable_file_logging}, "
        f"pii_redaction={enable_pii_redaction}"
    )


async def shutdown_logging() -> None:
    """Flush queued records and restore loguru's default stderr sink."""
    await logger.complete()
    if not _handler_ids:
        return
    for handler_id in _handler_ids:
        try:
            logger.remove(handler_id)
        except ValueError:
            pass  # removed elsewhere
    _handler_ids.clear()
    logger.add(sys.stderr)
