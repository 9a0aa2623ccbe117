"""Platform API client: identities, governance groups, lifecycle states,
capabilities, accounts and workflows.

Every call goes through the retrying transport; list endpoints are exposed
as single-pass page streams.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol

from scripts.idn_management.config import PrivilegedConfig
from scripts.idn_management.credentials import CredentialKind
from scripts.idn_management.errors import NotFoundError, UpstreamHTTPError
from scripts.idn_management.pagination import PageStream, PaginatedFetcher
from scripts.idn_management.transport import RetryingTransport

logger = logging.getLogger("idn_management.client")

PLATFORM_SOURCE_NAME = "IdentityNow"
PRIVILEGED_IDENTITIES_QUERY = f"@access(source.name.exact:{PLATFORM_SOURCE_NAME})"


@contextmanager
def _not_found_as(what: str) -> Iterator[None]:
    """Translate a 404 from the platform into NotFoundError."""
    try:
        yield
    except UpstreamHTTPError as exc:
        if exc.status_code == 404:
            raise NotFoundError(f"{what} not found") from exc
        raise


class CapabilityStore(Protocol):
    """Whole-set read and replace of an identity's capabilities."""

    def get_capabilities(self, identity_id: str) -> list[str]:
        ...

    def set_capabilities(self, identity_id: str, capabilities: list[str]) -> None:
        ...


class IdentityNowClient:
    """Primary API surface, authenticated with the client-credentials token."""

    def __init__(
        self,
        base_url: str,
        transport: RetryingTransport,
        fetcher: PaginatedFetcher,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._transport = transport
        self._fetcher = fetcher

    def _url(self, path: str) -> str:
        return f"{self._base}{path}"

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        return self._transport.execute("GET", self._url(path), params=params).json()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def test_connection(self) -> None:
        self._get("/v3/public-identities-config")

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def list_identities(self) -> PageStream:
        return self._fetcher.offset(self._url("/beta/identities"))

    def get_identity(self, identity_id: str) -> dict[str, Any]:
        """Identity record with attributes, status and lifecycle state."""
        with _not_found_as(f"Identity {identity_id}"):
            return self._get(f"/beta/identities/{identity_id}")

    def search_identities(self, query: str) -> list[dict[str, Any]]:
        """Single search call, used for lookups that match at most a few documents."""
        body = {
            "indices": ["identities"],
            "query": {"query": query},
            "sort": ["id"],
            "includeNested": True,
        }
        resp = self._transport.execute("POST", self._url("/v3/search"), json=body)
        return resp.json() or []

    def get_identity_document(self, identity_id: str) -> Optional[dict[str, Any]]:
        """Search document of an identity, including its accounts."""
        documents = self.search_identities(f"id:{identity_id}")
        return documents[0] if documents else None

    def get_identity_by_uid(self, uid: str) -> Optional[dict[str, Any]]:
        documents = self.search_identities(f'attributes.uid.exact:"{uid}"')
        return documents[0] if documents else None

    def list_privileged_identities(self) -> PageStream:
        """Identities holding an account on the platform source, with nested accounts."""
        body = {
            "indices": ["identities"],
            "query": {"query": PRIVILEGED_IDENTITIES_QUERY},
            "sort": ["id"],
            "includeNested": True,
        }
        return self._fetcher.cursor(self._url("/v3/search"), body, id_field="id")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def enable_account(self, account_id: str) -> None:
        self._transport.execute(
            "POST",
            self._url(f"/v3/accounts/{account_id}/enable"),
            json={"forceProvisioning": True},
        )

    def disable_account(self, account_id: str) -> None:
        self._transport.execute(
            "POST",
            self._url(f"/v3/accounts/{account_id}/disable"),
            json={"forceProvisioning": True},
        )

    # ------------------------------------------------------------------
    # Governance groups
    # ------------------------------------------------------------------

    def list_workgroups(self) -> PageStream:
        return self._fetcher.offset(self._url("/beta/workgroups"))

    def get_workgroup(self, workgroup_id: str) -> dict[str, Any]:
        with _not_found_as(f"Governance group {workgroup_id}"):
            return self._get(f"/v2/workgroups/{workgroup_id}")

    def list_workgroup_members(self, workgroup_id: str) -> PageStream:
        return self._fetcher.offset(self._url(f"/v2/workgroups/{workgroup_id}/members"))

    def modify_workgroup_members(
        self,
        workgroup_id: str,
        add: Optional[list[str]] = None,
        remove: Optional[list[str]] = None,
    ) -> None:
        self._transport.execute(
            "POST",
            self._url(f"/v2/workgroups/{workgroup_id}/members"),
            json={"add": add or [], "remove": remove or []},
        )

    # ------------------------------------------------------------------
    # Identity profiles and lifecycle states
    # ------------------------------------------------------------------

    def list_identity_profiles(self) -> PageStream:
        return self._fetcher.offset(self._url("/beta/identity-profiles"))

    def list_lifecycle_states(self, identity_profile_id: str) -> list[dict[str, Any]]:
        return self._get(f"/v3/identity-profiles/{identity_profile_id}/lifecycle-states") or []

    def set_lifecycle_state(self, identity_id: str, lifecycle_state_id: str) -> None:
        self._transport.execute(
            "POST",
            self._url(f"/v3/identities/{identity_id}/set-lifecycle-state"),
            json={"lifecycleStateId": lifecycle_state_id},
        )

    # ------------------------------------------------------------------
    # Capabilities (auth users)
    # ------------------------------------------------------------------

    def get_capabilities(self, identity_id: str) -> list[str]:
        with _not_found_as(f"Auth user {identity_id}"):
            auth_user = self._get(f"/v3/auth-users/{identity_id}")
        return list(auth_user.get("capabilities") or [])

    def set_capabilities(self, identity_id: str, capabilities: list[str]) -> None:
        self._transport.execute(
            "PATCH",
            self._url(f"/v3/auth-users/{identity_id}"),
            json=[{"op": "replace", "path": "/capabilities", "value": capabilities}],
            headers={"Content-Type": "application/json-patch+json"},
        )

    # ------------------------------------------------------------------
    # Workflows (error reports)
    # ------------------------------------------------------------------

    def list_workflows(self) -> list[dict[str, Any]]:
        return self._get("/beta/workflows") or []

    def create_workflow(self, workflow: dict[str, Any]) -> dict[str, Any]:
        # Creation is not idempotent, a replay would duplicate the workflow
        resp = self._transport.execute(
            "POST", self._url("/beta/workflows"), json=workflow, retry=False
        )
        return resp.json()

    def test_workflow(self, workflow_id: str, workflow_input: dict[str, Any]) -> None:
        self._transport.execute(
            "POST",
            self._url(f"/beta/workflows/{workflow_id}/test"),
            json={"input": workflow_input},
            retry=False,
        )


class PrivilegedCapabilityClient:
    """Capability read and replace on the privileged surface.

    Authenticated with the session token scraped from the privileged login.
    When that token cannot be obtained every call fails with
    ``AuthorizationError``.
    """

    def __init__(self, config: PrivilegedConfig, transport: RetryingTransport) -> None:
        self._base = config.api_url.rstrip("/")
        self._transport = transport

    def get_capabilities(self, identity_id: str) -> list[str]:
        with _not_found_as(f"User {identity_id}"):
            resp = self._transport.execute(
                "GET",
                f"{self._base}/cc/api/user/{identity_id}/capabilities",
                credential=CredentialKind.PRIVILEGED,
            )
        return list(resp.json().get("capabilities") or [])

    def set_capabilities(self, identity_id: str, capabilities: list[str]) -> None:
        self._transport.execute(
            "PATCH",
            f"{self._base}/cc/api/user/{identity_id}/capabilities",
            credential=CredentialKind.PRIVILEGED,
            json=[{"op": "replace", "path": "/capabilities", "value": capabilities}],
            headers={"Content-Type": "application/json-patch+json"},
        )
