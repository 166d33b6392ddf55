"""Structured logging setup and transaction-id propagation.

Configures Loguru with one of three sinks:
- logfmt: ``key="value"`` lines consumed by Grafana/Loki
- json: one JSON object per line
- text: human-readable coloured output for development

The transaction id (the correlation id of the message being handled) is kept
in a context variable so every log line emitted while a delivery is processed
carries it.
"""

import json
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from loguru import logger

from rmq_resilience.config import Settings, get_settings

# Context variable for transaction id propagation across async boundaries
transaction_id_ctx: ContextVar[str] = ContextVar("transaction_id", default="")

# Optional fields rendered by the logfmt sink, in output order
_LOGFMT_FIELDS = (
    ("duration_ms", "duration"),
    ("remote_ip", "remoteIP"),
    ("transaction_id", "transactionId"),
    ("error_code", "errorCode"),
    ("http_status", "httpStatus"),
)


class LogLevel(str, Enum):
    """Levels accepted by :func:`write_log`."""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"
    UNKNOWN = "unknown"


def get_transaction_id() -> str:
    """Get the current transaction id from context.

    Returns empty string outside a delivery/publish context.
    """
    return transaction_id_ctx.get()


@contextmanager
def transaction_scope(transaction_id: str | None) -> Iterator[str]:
    """Bind a transaction id to the context and to every Loguru record."""
    transaction_id = transaction_id or ""
    token = transaction_id_ctx.set(transaction_id)
    try:
        with logger.contextualize(transaction_id=transaction_id):
            yield transaction_id
    finally:
        transaction_id_ctx.reset(token)


def _ensure_unknown_level() -> None:
    try:
        logger.level("UNKNOWN")
    except ValueError:
        logger.level("UNKNOWN", no=20)


def write_log(
    message: str,
    level: LogLevel | str = LogLevel.INFO,
    duration_ms: int | None = None,
    remote_ip: str | None = None,
    method_name: str | None = None,
    transaction_id: str | None = None,
    error_code: int | None = None,
    http_status: int | None = None,
) -> None:
    """Emit a log line with the optional Grafana fields.

    The caller's function name and line number are taken from the call site
    unless ``method_name`` is given.
    """
    level = LogLevel(level)
    if level is LogLevel.UNKNOWN:
        _ensure_unknown_level()

    fields: dict[str, Any] = {
        "duration_ms": duration_ms,
        "remote_ip": remote_ip,
        "method_name": method_name,
        "transaction_id": transaction_id,
        "error_code": error_code,
        "http_status": http_status,
    }
    extra = {key: value for key, value in fields.items() if value is not None}
    logger.opt(depth=1).bind(**extra).log(level.value.upper(), message)


def _quote(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{text}"'


def format_logfmt(record: dict) -> str:
    """Render a Loguru record as a single ``key="value"`` line."""
    extra = record["extra"]
    parts = [
        f"message={_quote(record['message'])}",
        f"dt={_quote(record['time'].strftime('%d.%m.%Y %H:%M:%S'))}",
        f"level={record['level'].name.lower()}",
    ]

    method_name = extra.get("method_name") or record["function"]
    if method_name:
        parts.append(f"methodName={method_name}")
    if record["line"]:
        parts.append(f"lineNumber={record['line']}")

    for key, name in _LOGFMT_FIELDS:
        value = extra.get(key)
        if value in (None, ""):
            continue
        if key == "duration_ms":
            parts.append(f"{name}={value}ms")
        else:
            parts.append(f"{name}={_quote(value)}")

    handled = {"method_name"} | {key for key, _ in _LOGFMT_FIELDS}
    for key, value in extra.items():
        if key not in handled and value is not None:
            parts.append(f"{key}={_quote(value)}")

    if record["exception"] is not None and record["exception"].type is not None:
        parts.append(f"exception={_quote(record['exception'].type.__name__)}")

    return " ".join(parts)


def logfmt_sink(message) -> None:
    """Sink that outputs logfmt lines."""
    sys.stdout.write(format_logfmt(message.record) + "\n")
    sys.stdout.flush()


def text_formatter(record: dict) -> str:
    """Human-readable formatter for development.

    Includes transaction_id when available for easier debugging.
    """
    transaction_id = record["extra"].get("transaction_id", "")
    transaction_id_str = f"[{transaction_id[:8]}] " if transaction_id else ""

    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        f"<cyan>{transaction_id_str}</cyan>"
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n"
    )


def json_sink(message) -> None:
    """Custom sink that outputs JSON formatted logs."""
    record = message.record

    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    for key, value in record["extra"].items():
        # Skip complex objects that can't be serialized
        try:
            json.dumps(value)
            log_entry[key] = value
        except (TypeError, ValueError):
            log_entry[key] = str(value)

    if record["exception"] is not None:
        log_entry["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
            "traceback": record["exception"].traceback is not None,
        }

    sys.stdout.write(json.dumps(log_entry) + "\n")
    sys.stdout.flush()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure Loguru for the application.

    Sets up structured logging based on configuration:
    - logfmt lines for Grafana (LOG_FORMAT=logfmt)
    - JSON format (LOG_FORMAT=json)
    - Human-readable format for development (LOG_FORMAT=text)
    """
    settings = settings or get_settings()

    logger.remove()
    _ensure_unknown_level()

    if settings.log_format == "logfmt":
        logger.add(logfmt_sink, level=settings.log_level, backtrace=True, diagnose=False)
    elif settings.log_format == "json":
        logger.add(
            json_sink,
            level=settings.log_level,
            backtrace=True,
            diagnose=False,  # Disable diagnose in production for security
        )
    else:
        logger.add(
            sys.stdout,
            format=text_formatter,
            level=settings.log_level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            level=settings.log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
                "{name}:{function}:{line} - {message}"
            )
            if settings.log_format == "text"
            else "{message}",
            serialize=settings.log_format != "text",
            backtrace=True,
            diagnose=False,
        )

    logger.info(
        "Logging configured",
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
    )
