"""Shared fixtures: fake HTTP responses and an in-memory platform.

No test touches the network. Transport-level tests drive a MagicMock
``requests.Session``; reconciliation, provisioning and connector tests
run against ``FakeIdentityNow``, which exposes the same methods as the
real API client and records every write.
"""

from __future__ import annotations

import json
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from scripts.idn_management.config import (
    FeatureConfig,
    PaginationConfig,
    PlatformConfig,
    PrivilegedConfig,
    RetryConfig,
)
from scripts.idn_management.errors import NotFoundError
from scripts.idn_management.pagination import Page, PageStream

BASE_URL = "https://acme.api.identitynow.com"


def make_response(
    status_code: int = 200,
    json_data: Any = None,
    headers: Optional[dict] = None,
    text: Optional[str] = None,
    url: str = f"{BASE_URL}/v3/test",
) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.headers = headers or {}
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    resp.text = text
    resp.url = url
    return resp


def stream(records: list[dict]) -> PageStream:
    return PageStream(iter([Page(1, list(records), len(records))]))


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityNow:
    """In-memory platform tenant.

    Implements the ``IdentityNowClient`` methods the connector uses and
    the ``CapabilityStore`` protocol. Writes are appended to ``writes``.
    """

    def __init__(self) -> None:
        self.identities: dict[str, dict] = {}
        self.capabilities: dict[str, list[str]] = {}
        self.unindexed_levels: set[str] = set()
        self.workgroups: dict[str, dict] = {}
        self.members: dict[str, list[str]] = {}
        self.profiles: list[dict] = []
        self.states: dict[str, list[dict]] = {}
        self.workflows: list[dict] = []
        self.writes: list[tuple] = []
        self.capability_reads = 0
        self.enabled_accounts: set[str] = set()

    # -- setup helpers -------------------------------------------------

    def add_identity(
        self,
        identity_id: str,
        uid: str,
        capabilities: Optional[list[str]] = None,
        source: str = "src-hr",
        lifecycle: Optional[str] = None,
        manual: bool = False,
        status: str = "ACTIVE",
        email: Optional[str] = None,
    ) -> dict:
        raw = {
            "id": identity_id,
            "name": uid,
            "identityStatus": status,
            "attributes": {
                "uid": uid,
                "firstname": uid.capitalize(),
                "lastname": "Tester",
                "displayName": f"{uid.capitalize()} Tester",
                "cloudAuthoritativeSource": source,
                "email": email or f"{uid}@example.com",
            },
            "lifecycleState": {"stateName": lifecycle, "manuallyUpdated": manual} if lifecycle else None,
        }
        self.identities[identity_id] = raw
        self.capabilities[identity_id] = list(capabilities or [])
        self.enabled_accounts.add(f"acct-{identity_id}")
        return raw

    def add_workgroup(self, workgroup_id: str, name: str, members: list[str]) -> None:
        self.workgroups[workgroup_id] = {"id": workgroup_id, "name": name, "description": f"{name} group"}
        self.members[workgroup_id] = list(members)

    def add_profile(self, profile_id: str, name: str, source: str, states: list[tuple[str, str, str]]) -> None:
        """``states`` as (id, name, technicalName) triples."""
        self.profiles.append({"id": profile_id, "name": name, "authoritativeSource": {"id": source}})
        self.states[profile_id] = [
            {"id": state_id, "name": state_name, "technicalName": technical}
            for state_id, state_name, technical in states
        ]

    def document(self, identity_id: str) -> dict:
        raw = self.identities[identity_id]
        account: dict[str, Any] = {
            "id": f"acct-{identity_id}",
            "source": {"id": "idn-source", "name": "IdentityNow"},
            "entitlementAttributes": {},
        }
        if identity_id not in self.unindexed_levels:
            account["entitlementAttributes"]["assignedGroups"] = list(self.capabilities[identity_id])
        return {
            "id": identity_id,
            "name": raw["name"],
            "attributes": dict(raw["attributes"]),
            "accounts": [account],
        }

    # -- client surface ------------------------------------------------

    def test_connection(self) -> None:
        return None

    def list_identities(self) -> PageStream:
        return stream(list(self.identities.values()))

    def get_identity(self, identity_id: str) -> dict:
        if identity_id not in self.identities:
            raise NotFoundError(f"Identity {identity_id} not found")
        return self.identities[identity_id]

    def get_identity_document(self, identity_id: str) -> Optional[dict]:
        if identity_id not in self.identities:
            return None
        return self.document(identity_id)

    def get_identity_by_uid(self, uid: str) -> Optional[dict]:
        for identity_id, raw in self.identities.items():
            if raw["attributes"]["uid"] == uid:
                return self.document(identity_id)
        return None

    def list_privileged_identities(self) -> PageStream:
        return stream([
            self.document(identity_id)
            for identity_id, caps in sorted(self.capabilities.items())
            if caps or identity_id in self.unindexed_levels
        ])

    def enable_account(self, account_id: str) -> None:
        self.writes.append(("enable", account_id))
        self.enabled_accounts.add(account_id)
        self._set_status(account_id, "ACTIVE")

    def disable_account(self, account_id: str) -> None:
        self.writes.append(("disable", account_id))
        self.enabled_accounts.discard(account_id)
        self._set_status(account_id, "DISABLED")

    def _set_status(self, account_id: str, status: str) -> None:
        identity_id = account_id[len("acct-"):]
        self.identities[identity_id]["identityStatus"] = status

    def list_workgroups(self) -> PageStream:
        return stream(list(self.workgroups.values()))

    def get_workgroup(self, workgroup_id: str) -> dict:
        if workgroup_id not in self.workgroups:
            raise NotFoundError(f"Governance group {workgroup_id} not found")
        return self.workgroups[workgroup_id]

    def list_workgroup_members(self, workgroup_id: str) -> PageStream:
        return stream([{"id": member, "name": member} for member in self.members[workgroup_id]])

    def modify_workgroup_members(self, workgroup_id, add=None, remove=None) -> None:
        self.writes.append(("workgroup", workgroup_id, tuple(add or ()), tuple(remove or ())))
        members = self.members.setdefault(workgroup_id, [])
        for identity_id in add or []:
            if identity_id not in members:
                members.append(identity_id)
        for identity_id in remove or []:
            if identity_id in members:
                members.remove(identity_id)

    def list_identity_profiles(self) -> PageStream:
        return stream(self.profiles)

    def list_lifecycle_states(self, profile_id: str) -> list[dict]:
        return list(self.states.get(profile_id, []))

    def set_lifecycle_state(self, identity_id: str, lifecycle_state_id: str) -> None:
        self.writes.append(("lcs", identity_id, lifecycle_state_id))
        for states in self.states.values():
            for state in states:
                if state["id"] == lifecycle_state_id:
                    self.identities[identity_id]["lifecycleState"] = {
                        "stateName": state["technicalName"],
                        "manuallyUpdated": True,
                    }

    def get_capabilities(self, identity_id: str) -> list[str]:
        self.capability_reads += 1
        return list(self.capabilities[identity_id])

    def set_capabilities(self, identity_id: str, capabilities: list[str]) -> None:
        self.writes.append(("capabilities", identity_id, list(capabilities)))
        self.capabilities[identity_id] = list(capabilities)

    def list_workflows(self) -> list[dict]:
        return list(self.workflows)

    def create_workflow(self, workflow: dict) -> dict:
        created = dict(workflow, id=f"wf-{len(self.workflows) + 1}")
        self.workflows.append(created)
        self.writes.append(("create_workflow", created["name"]))
        return created

    def test_workflow(self, workflow_id: str, workflow_input: dict) -> None:
        self.writes.append(("test_workflow", workflow_id, workflow_input))


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def platform_config() -> PlatformConfig:
    return PlatformConfig(base_url=BASE_URL, client_id="client-id", client_secret="client-secret")


@pytest.fixture
def privileged_config() -> PrivilegedConfig:
    return PrivilegedConfig(
        login_url="https://acme.identitynow.com/login/get",
        username="admin",
        password="hunter2",
        api_url="https://acme.api.identitynow.com",
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_retries=3, backoff_base_seconds=1.0, backoff_max_seconds=8.0)


@pytest.fixture
def pagination_config() -> PaginationConfig:
    return PaginationConfig(batch_size=100, page_delay_seconds=0.5)


@pytest.fixture
def features() -> FeatureConfig:
    return FeatureConfig()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def broker() -> MagicMock:
    fake = MagicMock()
    fake.get_api_token.return_value = "api-token"
    fake.get_privileged_token.return_value = "privileged-token"
    return fake


@pytest.fixture
def platform() -> FakeIdentityNow:
    return FakeIdentityNow()
