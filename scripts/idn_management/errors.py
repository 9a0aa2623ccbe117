"""Typed errors surfaced by the connector."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ConnectorErrorType(str, Enum):
    GENERIC = "generic"
    NOT_FOUND = "not_found"


class ConnectorError(Exception):
    """Base exception for every error the connector surfaces."""

    error_type = ConnectorErrorType.GENERIC

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthenticationFailure(ConnectorError):
    """API credential could not be obtained. Fatal for the run."""


class NotFoundError(ConnectorError):
    """Requested account or entitlement does not exist."""

    error_type = ConnectorErrorType.NOT_FOUND


class ValidationError(ConnectorError):
    """Request rejected before any write was attempted."""


class UpstreamHTTPError(ConnectorError):
    """Non-success response from the platform.

    Attributes:
        status_code: HTTP status code
        endpoint: URL that failed
        attempts: number of attempts made, set by the transport
    """

    def __init__(self, status_code: int, message: str, endpoint: str) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        self.attempts: Optional[int] = None
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class AuthorizationError(UpstreamHTTPError):
    """Platform refused the credential (401/403) or none was available."""


class TransientUpstreamError(UpstreamHTTPError):
    """Rate limited or transient server failure."""

    def __init__(
        self,
        status_code: int,
        message: str,
        endpoint: str,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(status_code, message, endpoint)
        self.retry_after = retry_after


class PartialRunError(ConnectorError):
    """Aggregate of per-record failures collected during a bulk run."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} record(s) failed")
