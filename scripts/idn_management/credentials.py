"""Credential broker for the two independently expiring bearer tokens.

- API: OAuth2 client-credentials token for the primary API. Expiry comes
  from the ``expires_in`` of the token response.
- PRIVILEGED: session token scraped from the privileged login page. The
  login response carries no TTL, a fixed 15 minute validity is assumed.

Each kind is refreshed lazily and at most once at a time.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

import requests

from scripts.idn_management.config import PlatformConfig, PrivilegedConfig
from scripts.idn_management.errors import AuthenticationFailure

logger = logging.getLogger("idn_management.credentials")

PRIVILEGED_TOKEN_TTL_SECONDS = 15 * 60

_SCRIPT_BODY = re.compile(r"<script[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL)


class CredentialKind(str, Enum):
    API = "api"
    PRIVILEGED = "privileged"


@dataclass(frozen=True)
class Credential:
    kind: CredentialKind
    token: str = field(repr=False)
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def extract_session_token(html: str, token_field: str = "accessToken") -> Optional[str]:
    """Return the session token embedded as a JSON blob in a login page.

    Script bodies are scanned in order. A body may be the bare JSON object
    or an assignment such as ``window.SLPT = {...};``; the outermost braces
    are parsed and the first object carrying ``token_field`` wins.
    """
    for match in _SCRIPT_BODY.finditer(html):
        body = match.group(1)
        start, end = body.find("{"), body.rfind("}")
        if start < 0 or end <= start:
            continue
        try:
            blob = json.loads(body[start : end + 1])
        except ValueError:
            continue
        if isinstance(blob, dict) and blob.get(token_field):
            return str(blob[token_field])
    return None


class CredentialBroker:
    """Owns the cached credentials and serializes their refresh per kind."""

    def __init__(
        self,
        platform: PlatformConfig,
        privileged: Optional[PrivilegedConfig] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._platform = platform
        self._privileged = privileged
        self._session = session or requests.Session()
        self._timeout = timeout
        self._clock = clock
        self._credentials: dict[CredentialKind, Credential] = {}
        self._locks = {kind: threading.Lock() for kind in CredentialKind}

    @property
    def has_privileged_login(self) -> bool:
        return self._privileged is not None

    def get_api_token(self) -> str:
        """Return a valid API token, refreshing it if expired.

        Raises:
            AuthenticationFailure: the client-credentials exchange failed
        """
        cached = self._fresh(CredentialKind.API)
        if cached:
            return cached.token
        with self._locks[CredentialKind.API]:
            cached = self._fresh(CredentialKind.API)
            if cached:
                return cached.token
            credential = self._refresh_api_token()
            self._credentials[CredentialKind.API] = credential
            return credential.token

    def get_privileged_token(self) -> Optional[str]:
        """Return the privileged session token, refreshing it if expired.

        A failed refresh is logged and the stale token (or None) is
        returned; callers then fail downstream with an authorization error.
        """
        cached = self._fresh(CredentialKind.PRIVILEGED)
        if cached:
            return cached.token
        with self._locks[CredentialKind.PRIVILEGED]:
            cached = self._fresh(CredentialKind.PRIVILEGED)
            if cached:
                return cached.token
            try:
                credential = self._refresh_privileged_token()
            except (requests.RequestException, AuthenticationFailure) as exc:
                logger.error("Privileged session refresh failed: %s", exc)
                stale = self._credentials.get(CredentialKind.PRIVILEGED)
                return stale.token if stale else None
            self._credentials[CredentialKind.PRIVILEGED] = credential
            return credential.token

    def credential(self, kind: CredentialKind) -> Optional[Credential]:
        """Currently cached credential of ``kind``, fresh or not."""
        return self._credentials.get(kind)

    def invalidate(self, kind: CredentialKind, token: str) -> None:
        """Mark ``token`` expired after the platform rejected it.

        The credential is kept as the stale fallback. A token already
        replaced by a concurrent refresh is left alone.
        """
        with self._locks[kind]:
            cached = self._credentials.get(kind)
            if cached is None or cached.token != token:
                return
            now = self._clock()
            if not cached.is_expired(now):
                logger.info("Expiring rejected %s credential", kind.value)
                self._credentials[kind] = replace(cached, expires_at=now)

    def _fresh(self, kind: CredentialKind) -> Optional[Credential]:
        credential = self._credentials.get(kind)
        if credential and not credential.is_expired(self._clock()):
            return credential
        return None

    def _refresh_api_token(self) -> Credential:
        url = self._platform.resolved_token_url
        logger.info("Refreshing API token")
        params = {
            "grant_type": "client_credentials",
            "client_id": self._platform.client_id,
            "client_secret": self._platform.client_secret,
        }
        try:
            resp = self._session.post(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise AuthenticationFailure(f"Token request to {url} failed: {exc}") from exc
        if resp.status_code != 200:
            raise AuthenticationFailure(
                f"Token request to {url} returned {resp.status_code}"
            )
        try:
            data = resp.json()
            token = data["access_token"]
            ttl = float(data["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthenticationFailure(f"Malformed token response from {url}") from exc
        if ttl <= 0:
            raise AuthenticationFailure(f"Token from {url} has non-positive lifetime {ttl}")
        return Credential(CredentialKind.API, token, self._clock() + ttl)

    def _refresh_privileged_token(self) -> Credential:
        if self._privileged is None:
            raise AuthenticationFailure("Privileged login is not configured")
        login = self._privileged
        logger.info("Refreshing privileged session token")
        resp = self._session.post(
            login.login_url,
            data={"username": login.username, "password": login.password},
            headers={"Accept": "text/html"},
            timeout=self._timeout,
        )
        if resp.status_code != 200:
            raise AuthenticationFailure(
                f"Privileged login returned {resp.status_code}"
            )
        token = extract_session_token(resp.text, login.token_field)
        if not token:
            raise AuthenticationFailure("No session token found in privileged login page")
        return Credential(
            CredentialKind.PRIVILEGED,
            token,
            self._clock() + PRIVILEGED_TOKEN_TTL_SECONDS,
        )
