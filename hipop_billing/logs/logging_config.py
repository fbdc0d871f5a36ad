# ======================================================================
# FILE: hipop_billing/logs/logging_config.py
# Console logging for request handlers and scheduled jobs: JSON lines in
# production, readable text locally, secret redaction in both.
# ======================================================================
from __future__ import annotations

import json
import logging
import os
import re
import sys
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Iterator, Optional

# Sensitive key substrings for redaction
_SENSITIVE_KEYS = {"api_key", "apikey", "authorization", "secret", "password", "token", "service_key"}

# Attributes every LogRecord carries; anything else arrived via `extra=`
RESERVED_LOG_RECORD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _redact(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, str):
        if len(value) <= 8:
            return "***"
        return value[:4] + "***" + value[-4:]
    return value


def _maybe_redact_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return data
    redacted = {}
    for k, v in data.items():
        if any(sens in k.lower() for sens in _SENSITIVE_KEYS):
            redacted[k] = _redact(v)
        elif isinstance(v, dict):
            redacted[k] = _maybe_redact_mapping(v)
        else:
            redacted[k] = v
    return redacted


_BEARER_RE = re.compile(r"(Bearer\s+)([A-Za-z0-9._\-~+/=]+)", re.IGNORECASE)
_MONGO_RE = re.compile(r"(mongodb(?:\+srv)?://)([^:@/]+):([^@/]+)(@)", re.IGNORECASE)
_STRIPE_KEY_RE = re.compile(r"\b((?:sk|rk)_(?:live|test)_)([A-Za-z0-9]+)")


def _sanitize_log_message(message: str) -> str:
    if not isinstance(message, str) or not message:
        return message
    msg = _BEARER_RE.sub(lambda m: m.group(1) + "***REDACTED***", message)
    msg = _MONGO_RE.sub(lambda m: m.group(1) + "***:***" + m.group(4), msg)
    msg = _STRIPE_KEY_RE.sub(lambda m: m.group(1) + "***REDACTED***", msg)
    return msg


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in RESERVED_LOG_RECORD_KEYS}


class ProductionJSONFormatter(logging.Formatter):
    """Structured JSON logging for production systems"""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_log_message(record.getMessage()),
            "source": f"{record.filename}:{record.lineno} {record.funcName}",
        }
        if record.exc_info:
            base["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "trace": traceback.format_exception(*record.exc_info),
            }
        extras = _extras(record)
        if extras:
            base["extra"] = _maybe_redact_mapping(extras)
        return json.dumps(base, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-friendly formatter.

    Format:  HH:MM:SS.mmm [LEVEL] logger - msg | user_id=.. feature=..  (file.py:123 func)
    """

    _CONTEXT_KEYS = ("operation", "user_id", "feature", "reset_type", "duration_ms", "status")

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        msg = _sanitize_log_message(record.getMessage())
        extras = [f"{k}={getattr(record, k)}" for k in self._CONTEXT_KEYS if getattr(record, k, None) is not None]
        extra_str = f" | {' '.join(extras)}" if extras else ""
        base = f"{ts} [{record.levelname:>5}] {record.name} - {msg}{extra_str}  ({record.filename}:{record.lineno} {record.funcName})"
        if record.exc_info:
            base += "\n" + "".join(traceback.format_exception(*record.exc_info)).rstrip()
        return base


# Global flag to prevent duplicate logging setup
_logging_initialized = False


def setup_logging(level: str = "INFO", *, as_json: Optional[bool] = None) -> None:
    """
    Configure the root logger with a single stream handler.
    Serverless runtimes collect stdout, so there are no file handlers.
    """
    global _logging_initialized
    if _logging_initialized:
        return
    _logging_initialized = True

    if as_json is None:
        as_json = os.getenv("LOGS_AS_JSON", "").lower() in ("1", "true", "yes", "on")

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProductionJSONFormatter() if as_json else ConsoleFormatter())
    root.addHandler(handler)

    for noisy in ("httpx", "motor", "pymongo", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger(__name__).info("Logging initialized", extra={"format": "json" if as_json else "text"})


@contextmanager
def log_operation(logger: logging.Logger, operation_name: str, **context: Any) -> Iterator[logging.Logger]:
    start = perf_counter()
    op_ctx = {"operation": operation_name, **context}
    logger.debug(f"Starting {operation_name}", extra=op_ctx)
    try:
        yield logger
    except Exception as e:
        dur_ms = round((perf_counter() - start) * 1000, 2)
        logger.error(
            f"Failed {operation_name}: {e}",
            extra={**op_ctx, "duration_ms": dur_ms, "status": "error", "error_type": type(e).__name__},
        )
        raise
    dur_ms = round((perf_counter() - start) * 1000, 2)
    logger.info(f"Completed {operation_name}", extra={**op_ctx, "duration_ms": dur_ms, "status": "success"})
