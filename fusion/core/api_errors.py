"""
Error hierarchy for identity platform calls.

Every remote failure is mapped onto one of these classes. The execution
queue reads `retryable` to decide whether to try again; callers read the
class to decide whether a failed read is optional or ends the operation.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional


class APIError(Exception):
    """
    A failed call to the identity platform.

    Subclasses fix `status_code` and `retryable` as class attributes; the
    constructor arguments override them for one instance.

    Attributes:
        message: What went wrong
        source: Platform operation that failed (e.g. 'listAccounts')
        status_code: HTTP status, when the platform answered
        retryable: Whether the queue should try the call again
    """

    status_code: Optional[int] = None
    retryable = False

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        text = f"[{self.source}] {self.message}" if self.source else self.message
        if self.status_code:
            text += f" (HTTP {self.status_code})"
        return text


class RetryableError(APIError):
    """Transient failure: 5xx answers, dropped connections, token hiccups."""

    retryable = True


class RateLimitError(RetryableError):
    """
    The platform answered 429.

    retry_after is the server's wait hint in seconds; None means the queue
    falls back to exponential backoff.
    """

    status_code = 429

    def __init__(self, message: str, source: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, source=source)
        self.retry_after = retry_after


class RequestTimeoutError(RetryableError):
    """A queued call ran past its per-call timeout and was abandoned."""

    def __init__(self, message: str, source: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(message, source=source)
        self.timeout = timeout


class FatalError(APIError):
    """Permanent failure; retrying the same call cannot succeed (e.g. 403)."""


class AuthenticationError(FatalError):
    """The client credentials were rejected or the token expired."""

    status_code = 401

    def __init__(self, message: str = "Client credentials rejected", source: Optional[str] = None):
        super().__init__(message, source=source)


class NotFoundError(FatalError):
    """
    A required remote entity is missing.

    Raised for HTTP 404 and when a contributing source, an identity chosen
    by a reviewer, or the source owner cannot be found. Never silently
    substituted.
    """

    status_code = 404

    def __init__(
        self,
        message: str = "Not found",
        source: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        if resource_id:
            message = f"{message}: {resource_id}"
        super().__init__(message, source=source)
        self.resource_id = resource_id


class ValidationError(FatalError):
    """The platform refused the request body or parameters (HTTP 400)."""

    status_code = 400

    def __init__(self, message: str = "Request rejected", source: Optional[str] = None):
        super().__init__(message, source=source)


class ConfigurationError(FatalError):
    """
    The run cannot proceed with the current settings.

    Surfaced immediately; e.g. a review case with no source owner.
    """

    def __init__(self, message: str, source: Optional[str] = None, missing_config: Optional[str] = None):
        super().__init__(message, source=source)
        self.missing_config = missing_config


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts either delta-seconds or an HTTP date. Returns None when the
    header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_http_error(
    status_code: int,
    response_text: str = "",
    source: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> APIError:
    """
    Map a failed platform response onto the error hierarchy.

    Args:
        status_code: HTTP status code
        response_text: Response body; the first 200 characters are kept
        source: Platform operation name
        headers: Response headers (Retry-After on 429)

    Returns:
        The matching APIError subclass instance
    """
    detail = response_text[:200]
    if status_code == 429:
        retry_after = parse_retry_after(headers.get("retry-after")) if headers else None
        return RateLimitError(f"Rate limited: {detail}", source=source, retry_after=retry_after)
    if status_code == 401:
        return AuthenticationError(f"Authentication failed: {detail}", source=source)
    if status_code == 403:
        return FatalError(f"Access forbidden: {detail}", source=source, status_code=403)
    if status_code == 404:
        return NotFoundError(f"Not found: {detail}", source=source)
    if status_code == 400:
        return ValidationError(f"Bad request: {detail}", source=source)
    if 500 <= status_code < 600:
        return RetryableError(f"Server error: {detail}", source=source, status_code=status_code)
    return APIError(f"HTTP error {status_code}: {detail}", source=source, status_code=status_code)
