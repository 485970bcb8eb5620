"""
Structured JSON logging for the natal chart engine.

Provides consistent, structured logging with request correlation,
performance timing, and chart pipeline context for observability.
"""

import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Any, Optional
from datetime import datetime, timezone


# Context variable for request correlation
request_id_context: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName'
}


class JsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format with:
    - Standard fields: timestamp, level, logger, message
    - Request correlation: request_id
    - Performance: duration_ms (for timed operations)
    - Chart context: source, fingerprint, outcome, etc.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        return json.dumps(log_entry, ensure_ascii=False, separators=(',', ':'), default=str)


class StructuredLogger:
    """
    Structured logger for chart pipeline events.

    Provides methods for logging the pipeline's business operations with
    consistent structure and correlation.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def chart_generated(
        self,
        source: str,
        fingerprint: str,
        duration_ms: float,
        body_count: int,
        aspect_count: int,
        outcome: str = "generated"
    ):
        """Log a chart returned to the caller (fresh or from cache)."""
        self.logger.info(
            f"Chart {outcome}",
            extra={
                "operation": "chart_generated",
                "outcome": outcome,
                "source": source,
                "fingerprint": fingerprint[:16],
                "body_count": body_count,
                "aspect_count": aspect_count,
                "duration_ms": round(duration_ms, 2),
                "performance_category": self._categorize_performance(duration_ms)
            }
        )

    def chart_error(
        self,
        error_code: str,
        error_title: str,
        fingerprint: str,
        duration_ms: float,
        cause: Optional[str] = None
    ):
        """Log a failed chart generation."""
        self.logger.error(
            f"Chart generation failed: {error_title}",
            extra={
                "operation": "chart_error",
                "error_code": error_code,
                "error_title": error_title,
                "fingerprint": fingerprint[:16],
                "duration_ms": round(duration_ms, 2),
                "cause": cause
            }
        )

    def cache_operation(
        self,
        operation: str,  # "hit", "miss", "save", "evict", "persist_failed", "read_failed", "decode_failed"
        key_hash: str,
        cache_size: Optional[int] = None,
        count: Optional[int] = None
    ):
        """Log chart cache operations."""
        level = logging.WARNING if operation.endswith("_failed") else logging.DEBUG
        self.logger.log(
            level,
            f"Cache {operation}",
            extra={
                "operation": f"cache_{operation}",
                "key_hash": key_hash[:16],
                "cache_size": cache_size,
                "count": count
            }
        )

    def rate_limit_decision(
        self,
        allowed: bool,
        retry_after: Optional[float],
        remaining: Optional[int] = None
    ):
        """Log a rate limiter decision for a metered request."""
        self.logger.log(
            logging.INFO if allowed else logging.WARNING,
            "Rate limit allowed" if allowed else "Rate limit denied",
            extra={
                "operation": "rate_limit_decision",
                "allowed": allowed,
                "retry_after_seconds": round(retry_after, 3) if retry_after is not None else None,
                "remaining": remaining
            }
        )

    def upstream_call(
        self,
        endpoint: str,
        status_code: Optional[int],
        duration_ms: float,
        attempt: int = 1,
        error: Optional[str] = None
    ):
        """Log one HTTP call to the chart service."""
        level = logging.WARNING if error else logging.INFO
        self.logger.log(
            level,
            f"Chart service call {endpoint} {'failed' if error else 'completed'}",
            extra={
                "operation": "upstream_call",
                "endpoint": endpoint,
                "status_code": status_code,
                "attempt": attempt,
                "duration_ms": round(duration_ms, 2),
                "error": error
            }
        )

    def startup_event(
        self,
        component: str,
        status: str,  # "starting", "ready", "disabled", "error", "stopped"
        duration_ms: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log application startup events."""
        level = logging.ERROR if status == "error" else logging.INFO
        self.logger.log(
            level,
            f"Startup: {component} {status}",
            extra={
                "operation": "startup",
                "component": component,
                "status": status,
                "duration_ms": round(duration_ms, 2) if duration_ms else None,
                **(details or {})
            }
        )

    @staticmethod
    def _categorize_performance(duration_ms: float) -> str:
        """Categorize performance for easy filtering."""
        if duration_ms < 50:
            return "fast"
        elif duration_ms < 500:
            return "normal"
        elif duration_ms < 3000:
            return "slow"
        else:
            return "very_slow"


def setup_logging(level: str = "INFO", enable_json: bool = True) -> None:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        enable_json: Whether to use JSON formatting
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[],
        force=True
    )

    console_handler = logging.StreamHandler()

    if enable_json:
        console_handler.setFormatter(JsonFormatter())
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def set_request_context(request_id: Optional[str] = None) -> str:
    """
    Set request context for correlation.

    Args:
        request_id: Optional request ID (generated if not provided)

    Returns:
        The request ID (generated or provided)
    """
    if request_id is None:
        request_id = str(uuid.uuid4())

    request_id_context.set(request_id)
    return request_id


def clear_request_context():
    request_id_context.set(None)


class TimedOperation:
    """Context manager for timing operations with automatic logging."""

    def __init__(self, logger: StructuredLogger, operation_name: str, **context):
        self.logger = logger
        self.operation_name = operation_name
        self.context = context
        self.start_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.logger.info(
                f"Operation completed: {self.operation_name}",
                extra={
                    "operation": self.operation_name,
                    "duration_ms": round(self.duration_ms, 2),
                    "performance_category": StructuredLogger._categorize_performance(self.duration_ms),
                    **self.context
                }
            )
        else:
            self.logger.logger.error(
                f"Operation failed: {self.operation_name}",
                extra={
                    "operation": self.operation_name,
                    "duration_ms": round(self.duration_ms, 2),
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val) if exc_val else None,
                    **self.context
                }
            )
