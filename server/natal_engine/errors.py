from fastapi import HTTPException
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class NatalEngineError(Exception):
    """
    Base class for all chart pipeline errors.

    Every error carries a CATEGORY.SPECIFIC_ERROR code so the HTTP layer
    and the structured logs can classify it without a stack trace.
    """

    code = "ENGINE.ERROR"
    title = "Chart engine error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.title)
        self.detail = detail


class UnknownTimezone(NatalEngineError):
    code = "TIME.UNKNOWN_ZONE"
    title = "Unknown timezone identifier"

    def __init__(self, identifier: str):
        super().__init__(f"Timezone '{identifier}' is not in the IANA database")
        self.identifier = identifier


class RulerNotFound(NatalEngineError):
    code = "CHART.RULER_NOT_FOUND"
    title = "House ruler missing from chart"

    def __init__(self, body):
        name = getattr(body, "value", body)
        super().__init__(f"Ruling body '{name}' is not among the chart bodies")
        self.body = body


class InvalidBirthInput(NatalEngineError):
    code = "INPUT.INVALID"
    title = "Invalid birth data"


class Offline(NatalEngineError):
    code = "NETWORK.OFFLINE"
    title = "No internet connection"

    def __init__(self, detail: str = "No connectivity and no cached chart for this birth input."):
        super().__init__(detail)


class QuotaExceeded(NatalEngineError):
    code = "RATE.LIMITED"
    title = "Request limit reached"

    def __init__(self, retry_after: float):
        super().__init__(f"Request limit reached. Retry after {int(round(retry_after))} seconds.")
        self.retry_after = retry_after


class UpstreamFailure(NatalEngineError):
    code = "UPSTREAM.FAILED"
    title = "Chart service request failed"

    def __init__(self, cause: Exception):
        super().__init__(f"Failed to generate chart: {cause}")
        self.cause = cause


class DecodingFailure(NatalEngineError):
    code = "UPSTREAM.DECODING"
    title = "Chart service response could not be decoded"

    def __init__(self, cause):
        super().__init__(f"Unable to decode chart data: {cause}")
        self.cause = cause


class CachePersistFailure(NatalEngineError):
    code = "CACHE.PERSIST_FAILED"
    title = "Chart could not be saved for offline access"

    def __init__(self, cause: Exception):
        super().__init__(f"Failed to persist chart: {cause}")
        self.cause = cause


class StorageError(NatalEngineError):
    code = "STORE.UNAVAILABLE"
    title = "Record store unavailable"


def _error_response(code: str, title: str, detail: str = "", tip: str = "") -> Dict[str, Any]:
    return {
        "code": code,
        "title": title,
        "detail": detail,
        "tip": tip
    }


def bad_request(code: str, title: str, detail: str = "", tip: str = ""):
    """
    Raise a 400 Bad Request exception with structured error response.

    Args:
        code: Error code following CATEGORY.SPECIFIC_ERROR pattern
        title: Human-readable error title
        detail: Specific details about this error instance
        tip: Actionable guidance for resolving the error
    """
    logger.warning(f"Bad request: {code} - {title} - {detail}")
    raise HTTPException(status_code=400, detail=_error_response(code, title, detail, tip))


def not_found(code: str, title: str, detail: str = "", tip: str = ""):
    """Raise a 404 Not Found exception with structured error response."""
    raise HTTPException(status_code=404, detail=_error_response(code, title, detail, tip))


def too_many_requests(retry_after: float, code: str = "RATE.LIMITED",
                      title: str = "Too many requests",
                      detail: str = "Chart service request limit reached."):
    """
    Raise a 429 Too Many Requests exception with a Retry-After header.

    Args:
        retry_after: Seconds until the next request slot frees up
        code: Error code
        title: Error title
        detail: Error details
    """
    seconds = max(int(round(retry_after)), 1)
    logger.warning(f"Rate limit exceeded: {detail}")
    raise HTTPException(
        status_code=429,
        detail=_error_response(code, title, detail, f"Retry after {seconds} seconds."),
        headers={"Retry-After": str(seconds)}
    )


def bad_gateway(code: str = "UPSTREAM.FAILED", title: str = "Chart service error",
                detail: str = "", tip: str = "Retry request; check service status if persistent."):
    """Raise a 502 Bad Gateway exception for upstream failures."""
    logger.error(f"Upstream error: {code} - {title} - {detail}")
    raise HTTPException(status_code=502, detail=_error_response(code, title, detail, tip))


def service_unavailable(code: str = "SERVICE.UNAVAILABLE",
                        title: str = "Service temporarily unavailable",
                        detail: str = "Service is starting up or under maintenance.",
                        tip: str = "Retry after a few moments."):
    """Raise a 503 Service Unavailable exception."""
    logger.warning(f"Service unavailable: {detail}")
    raise HTTPException(status_code=503, detail=_error_response(code, title, detail, tip))


def server_error(code: str = "SERVER.ERROR", title: str = "Server error",
                 detail: str = "", tip: str = ""):
    """Raise a 500 Internal Server Error exception."""
    logger.error(f"Server error: {code} - {title} - {detail}")
    raise HTTPException(status_code=500, detail=_error_response(code, title, detail, tip))


def map_chart_error(err: NatalEngineError):
    """
    Map chart pipeline errors to friendly HTTP errors.

    Args:
        err: The domain error raised by the chart service
    """
    if isinstance(err, QuotaExceeded):
        too_many_requests(err.retry_after, detail=str(err))

    elif isinstance(err, Offline):
        service_unavailable(
            err.code,
            err.title,
            str(err),
            "Reconnect to generate a new chart; previously generated charts stay available offline."
        )

    elif isinstance(err, UnknownTimezone):
        bad_request(
            err.code,
            err.title,
            str(err),
            "Use an IANA identifier such as 'Europe/Kyiv' or 'America/New_York'."
        )

    elif isinstance(err, InvalidBirthInput):
        bad_request(err.code, err.title, str(err), "Check birth date, time and coordinates.")

    elif isinstance(err, UpstreamFailure):
        cause = err.cause
        code = cause.code if isinstance(cause, NatalEngineError) else err.code
        bad_gateway(code, err.title, str(err)[:200])

    elif isinstance(err, StorageError):
        service_unavailable(err.code, err.title, str(err), "Check the record store connection.")

    else:
        server_error(err.code, err.title, str(err)[:200], "Retry request; report if persistent.")


def error_payload(err: NatalEngineError, retry_after: Optional[float] = None) -> Dict[str, Any]:
    """Build the structured error body without raising (used for logs and tests)."""
    payload = _error_response(err.code, err.title, str(err))
    if retry_after is not None:
        payload["retry_after_seconds"] = round(retry_after, 3)
    return payload
