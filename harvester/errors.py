"""Exception hierarchy for CCB harvesting.

Every error raised by the harvester inherits from HarvestError so callers can
catch the whole family with one clause. Transport-level failures are grouped
under TransportError; those are the kinds the attendance enricher isolates
per item and the paginator treats as fatal for the whole harvest.
"""
from typing import Any, Dict, Optional


class HarvestError(Exception):
    """Base exception for all harvester errors."""

    _retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """True for transient failures (timeouts, rate limits, 5xx)."""
        return self._retryable

    def __str__(self):
        base_msg = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


class ConfigurationError(HarvestError):
    """Missing credentials or base URL; raised before any network call."""


class ParseError(HarvestError):
    """XML body malformed, or a node required for normalization is missing."""


class TransportError(HarvestError):
    """Any failure talking to the upstream API."""


class RequestTimeout(TransportError):
    """An outbound call exceeded its deadline."""

    _retryable = True

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s: {label}",
            context={'duration_ms': int(timeout * 1000)}
        )


class UpstreamHTTPError(TransportError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status: int, body_excerpt: str = ''):
        self.status = status
        self.body_excerpt = body_excerpt
        super().__init__(f"HTTP {status}: {body_excerpt}")

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class UpstreamConnectionError(TransportError):
    """The request never produced an HTTP response."""

    _retryable = True


class UpstreamAPIError(TransportError):
    """HTTP 200 carrying an embedded <errors> element."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(
            message,
            context={'code': code} if code else None
        )


class PaginationError(HarvestError):
    """A paginated harvest was aborted; wraps the underlying cause."""

    def __init__(self, service: str, cause: Exception):
        self.service = service
        self.cause = cause
        super().__init__(
            f"Harvest of '{service}' failed: {cause}",
            context={'error_type': type(cause).__name__}
        )
