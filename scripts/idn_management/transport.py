"""Retrying HTTP transport with bearer authentication."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional

import requests

from scripts.idn_management.config import RetryConfig
from scripts.idn_management.credentials import CredentialBroker, CredentialKind
from scripts.idn_management.errors import (
    AuthorizationError,
    TransientUpstreamError,
    UpstreamHTTPError,
)

logger = logging.getLogger("idn_management.transport")

RATE_LIMITED = 429

_NETWORK_ERRORS = (requests.ConnectionError, requests.Timeout)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header, None when absent or not numeric."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


class RetryingTransport:
    """Executes requests with bounded retry on transient failures.

    Retried: 429, the configured transient status codes and network-level
    errors. A Retry-After hint is honoured exactly, otherwise the wait is
    exponential with jitter, capped at ``backoff_max_seconds``. Once the
    retries are exhausted the last error is re-raised with ``attempts``
    set on it.
    """

    def __init__(
        self,
        broker: CredentialBroker,
        retry: RetryConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._broker = broker
        self._retry = retry
        self._session = session or requests.Session()
        self._sleep = sleep
        self._jitter = jitter

    def execute(
        self,
        method: str,
        url: str,
        *,
        credential: Optional[CredentialKind] = CredentialKind.API,
        params: Optional[dict] = None,
        json: Any = None,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
        retry: bool = True,
    ) -> requests.Response:
        """Send one logical request and return the successful response.

        ``retry=False`` is for writes that are not safe to replay. A 401 on
        a bearer credential expires it and resends once with a fresh token,
        whatever ``retry`` says, since the rejected request did nothing.
        """
        max_attempts = self._retry.max_retries + 1 if retry else 1
        attempt = 0
        reauthenticated = False
        while True:
            attempt += 1
            token = self._token(credential, url)
            request_headers = {"Accept": "application/json"}
            request_headers.update(headers or {})
            if token:
                request_headers["Authorization"] = f"Bearer {token}"
            try:
                resp = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    data=data,
                    headers=request_headers,
                    timeout=self._retry.request_timeout_seconds,
                )
            except _NETWORK_ERRORS as exc:
                if attempt >= max_attempts:
                    exc.attempts = attempt
                    logger.error(
                        "%s %s failed after %d attempt(s): %s", method, url, attempt, exc,
                        extra={"attempt": attempt},
                    )
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "%s %s network error, retrying in %.1fs: %s", method, url, delay, exc,
                    extra={"attempt": attempt},
                )
                self._sleep(delay)
                continue

            if resp.status_code < 400:
                return resp

            error = self._error_for(resp)
            if isinstance(error, TransientUpstreamError) and attempt < max_attempts:
                delay = error.retry_after if error.retry_after is not None else self._backoff(attempt)
                logger.warning(
                    "%s %s returned %d, retrying in %.1fs", method, url, resp.status_code, delay,
                    extra={"attempt": attempt, "status_code": resp.status_code},
                )
                self._sleep(delay)
                continue

            if error.status_code == 401 and token and not reauthenticated:
                reauthenticated = True
                logger.warning(
                    "%s %s rejected the %s token, refreshing", method, url, credential.value,
                    extra={"attempt": attempt, "status_code": 401},
                )
                self._broker.invalidate(credential, token)
                continue

            error.attempts = attempt
            raise error

    def _token(self, credential: Optional[CredentialKind], url: str) -> Optional[str]:
        if credential is None:
            return None
        if credential is CredentialKind.API:
            return self._broker.get_api_token()
        token = self._broker.get_privileged_token()
        if not token:
            raise AuthorizationError(401, "No privileged session token available", url)
        return token

    def _error_for(self, resp: requests.Response) -> UpstreamHTTPError:
        status = resp.status_code
        url = resp.url
        text = resp.text[:500]
        if status == RATE_LIMITED or status in self._retry.retry_status_codes:
            return TransientUpstreamError(
                status, text, url, retry_after=parse_retry_after(resp.headers.get("Retry-After"))
            )
        if status in (401, 403):
            return AuthorizationError(status, text, url)
        return UpstreamHTTPError(status, text, url)

    def _backoff(self, attempt: int) -> float:
        base = self._retry.backoff_base_seconds
        delay = base * (2 ** (attempt - 1)) + self._jitter(0, base)
        return min(delay, self._retry.backoff_max_seconds)
