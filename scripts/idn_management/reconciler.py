"""Entitlement reconciliation.

Three independently sourced facts make up an account's entitlements:

- levels: capabilities held on the platform, read from the privileged
  identity index when one was built for the run, else per identity;
- workgroups: governance groups whose member list contains the identity;
- lifecycle state: only when it was set manually. Automatically derived
  states are not provisionable and are reported as absent.

Upstream record shapes differ between endpoints. Each shape has exactly
one adapter below producing the normalized form the rest of the module
works on.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from scripts.idn_management.client import (
    PLATFORM_SOURCE_NAME,
    CapabilityStore,
    IdentityNowClient,
)
from scripts.idn_management.config import FeatureConfig
from scripts.idn_management.entitlements import Entitlement, lcs_entitlement
from scripts.idn_management.errors import ValidationError

logger = logging.getLogger("idn_management.reconciler")

# Governance group ids are dash-delimited UUIDs, capabilities never are
WORKGROUP_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

DISABLED_STATUS = "DISABLED"


class DeltaKind(str, Enum):
    LEVEL = "level"
    WORKGROUP = "workgroup"
    LCS = "lcs"


class ChangeOp(str, Enum):
    ADD = "Add"
    REMOVE = "Remove"
    SET = "Set"


def safe_list(value: Any) -> list[str]:
    """Single value, list or nothing, as a list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ----------------------------------------------------------------------
# Classification and deltas
# ----------------------------------------------------------------------


def classify_entitlement(value: str) -> DeltaKind:
    """WORKGROUP for governance group ids, LEVEL for anything else."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid entitlement value {value!r}")
    if WORKGROUP_ID_PATTERN.match(value.strip()):
        return DeltaKind.WORKGROUP
    return DeltaKind.LEVEL


def partition_entitlements(values: Iterable[str]) -> dict[DeltaKind, frozenset[str]]:
    partitions: dict[DeltaKind, set[str]] = {DeltaKind.LEVEL: set(), DeltaKind.WORKGROUP: set()}
    for value in values:
        partitions[classify_entitlement(value)].add(value.strip())
    return {kind: frozenset(members) for kind, members in partitions.items()}


@dataclass(frozen=True)
class EntitlementDelta:
    """Idempotent add/remove request against one identity and one subsystem."""

    target: str
    kind: DeltaKind
    add: frozenset[str] = frozenset()
    remove: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        overlap = self.add & self.remove
        if overlap:
            raise ValidationError(
                f"Values both added and removed for {self.target}: {sorted(overlap)}"
            )
        if self.kind is DeltaKind.LCS and len(self.add) > 1:
            raise ValidationError("Only one lifecycle state can be set")

    @property
    def is_empty(self) -> bool:
        return not self.add and not self.remove

    @classmethod
    def for_op(
        cls, target: str, kind: DeltaKind, op: ChangeOp, values: Iterable[str]
    ) -> "EntitlementDelta":
        members = frozenset(values)
        if op is ChangeOp.ADD:
            return cls(target, kind, add=members)
        if op is ChangeOp.REMOVE:
            return cls(target, kind, remove=members)
        raise ValidationError(f"Unsupported operation {op.value} for {kind.value}")


def build_deltas(target: str, op: ChangeOp, values: Iterable[str]) -> list[EntitlementDelta]:
    """Route level and workgroup values to one delta per subsystem.

    Empty partitions produce no delta.
    """
    if op is ChangeOp.SET:
        raise ValidationError("Set operations are not supported for levels or workgroups")
    deltas = []
    for kind, members in partition_entitlements(values).items():
        if members:
            deltas.append(EntitlementDelta.for_op(target, kind, op, members))
    return deltas


def merge_deltas(deltas: Iterable[EntitlementDelta]) -> list[EntitlementDelta]:
    """Fold deltas per (target, kind) so each subsystem is written once."""
    merged: dict[tuple[str, DeltaKind], EntitlementDelta] = {}
    for delta in deltas:
        key = (delta.target, delta.kind)
        previous = merged.get(key)
        if previous is None:
            merged[key] = delta
        else:
            merged[key] = EntitlementDelta(
                delta.target,
                delta.kind,
                add=previous.add | delta.add,
                remove=previous.remove | delta.remove,
            )
    return list(merged.values())


def resulting_capabilities(current: Iterable[str], delta: EntitlementDelta) -> list[str]:
    """Full capability set after applying ``delta`` to ``current``.

    Added values come first, then the surviving current ones, without
    duplicates.
    """
    result: list[str] = []
    for value in [*sorted(delta.add), *current]:
        if value not in delta.remove and value not in result:
            result.append(value)
    return result


# ----------------------------------------------------------------------
# Normalized upstream records
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class IdentityRecord:
    identity_id: str
    uid: str
    first_name: Optional[str]
    last_name: Optional[str]
    display_name: Optional[str]
    enabled: bool
    authoritative_source: Optional[str]
    lifecycle_state_name: Optional[str]
    lifecycle_manually_set: bool


@dataclass(frozen=True)
class PlatformAccount:
    """The identity's account on the platform's own source."""

    account_id: str
    # None when the account carries no assignedGroups attribute at all
    assigned_groups: Optional[frozenset[str]]


def normalize_identity(raw: dict[str, Any]) -> IdentityRecord:
    """Adapter for identity records from the identities list/get endpoints."""
    attributes = raw.get("attributes") or {}
    lifecycle = raw.get("lifecycleState") or {}
    return IdentityRecord(
        identity_id=raw["id"],
        uid=attributes.get("uid") or raw.get("name", ""),
        first_name=attributes.get("firstname"),
        last_name=attributes.get("lastname"),
        display_name=attributes.get("displayName") or raw.get("name"),
        enabled=raw.get("identityStatus") != DISABLED_STATUS,
        authoritative_source=attributes.get("cloudAuthoritativeSource"),
        lifecycle_state_name=lifecycle.get("stateName"),
        lifecycle_manually_set=bool(lifecycle.get("manuallyUpdated")),
    )


def platform_account_from_document(document: dict[str, Any]) -> Optional[PlatformAccount]:
    """Adapter for the nested accounts of an identity search document."""
    for account in document.get("accounts") or []:
        source = account.get("source") or {}
        if source.get("name") == PLATFORM_SOURCE_NAME:
            entitlement_attributes = account.get("entitlementAttributes") or {}
            groups = entitlement_attributes.get("assignedGroups")
            return PlatformAccount(
                account_id=account.get("id", ""),
                assigned_groups=frozenset(safe_list(groups)) if groups is not None else None,
            )
    return None


# ----------------------------------------------------------------------
# Account view
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class AccountView:
    identity_id: str
    unique_id: str
    display_name: Optional[str]
    enabled: bool
    levels: frozenset[str] = frozenset()
    workgroups: frozenset[str] = frozenset()
    lifecycle_state: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def has_entitlements(self) -> bool:
        return bool(self.levels or self.workgroups or self.lifecycle_state)

    def to_output(self, features: FeatureConfig) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "id": self.identity_id,
            "uid": self.unique_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name,
        }
        if features.enable_levels:
            attributes["levels"] = sorted(self.levels)
        if features.enable_workgroups:
            attributes["workgroups"] = sorted(self.workgroups)
        if features.enable_lcs:
            attributes["lcs"] = self.lifecycle_state
        return {
            "identity": self.identity_id,
            "uuid": self.unique_id,
            "disabled": not self.enabled,
            "attributes": attributes,
        }


# ----------------------------------------------------------------------
# Run-scoped indexes
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class WorkgroupIndex:
    """Governance group id -> member identity ids."""

    members: dict[str, frozenset[str]] = field(default_factory=dict)

    def groups_for(self, identity_id: str) -> frozenset[str]:
        return frozenset(
            group_id for group_id, member_ids in self.members.items() if identity_id in member_ids
        )


@dataclass(frozen=True)
class PrivilegedIndex:
    """Identity id -> platform account of every privileged identity."""

    accounts: dict[str, Optional[PlatformAccount]] = field(default_factory=dict)

    @classmethod
    def from_documents(cls, documents: Iterable[dict[str, Any]]) -> "PrivilegedIndex":
        return cls({doc["id"]: platform_account_from_document(doc) for doc in documents})

    def __contains__(self, identity_id: str) -> bool:
        return identity_id in self.accounts


class LifecycleCatalog:
    """Identity profiles and their lifecycle states, loaded once per run."""

    def __init__(self, client: IdentityNowClient) -> None:
        self._client = client
        self._profiles: Optional[list[dict[str, Any]]] = None
        self._states: dict[str, list[dict[str, Any]]] = {}

    def profiles(self) -> list[dict[str, Any]]:
        if self._profiles is None:
            self._profiles = list(self._client.list_identity_profiles().records())
        return self._profiles

    def states(self, profile_id: str) -> list[dict[str, Any]]:
        if profile_id not in self._states:
            self._states[profile_id] = self._client.list_lifecycle_states(profile_id)
        return self._states[profile_id]

    def profile_for_source(self, source_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Identity profile whose authoritative source is ``source_id``."""
        if not source_id:
            return None
        for profile in self.profiles():
            if (profile.get("authoritativeSource") or {}).get("id") == source_id:
                return profile
        return None

    def state_id_for(self, source_id: Optional[str], technical_name: str) -> Optional[str]:
        profile = self.profile_for_source(source_id)
        if not profile:
            return None
        for state in self.states(profile["id"]):
            if state.get("technicalName") == technical_name:
                return state["id"]
        return None

    def is_valid(self, lifecycle_state_id: str, source_id: Optional[str]) -> bool:
        """True if the state belongs to the profile sourcing the identity."""
        profile = self.profile_for_source(source_id)
        if not profile:
            logger.info("No identity profile found for source %s", source_id)
            return False
        return any(state.get("id") == lifecycle_state_id for state in self.states(profile["id"]))

    def entitlements(self) -> list[Entitlement]:
        result = []
        for profile in self.profiles():
            logger.info("Fetching lifecycle states for %s", profile.get("name"))
            for state in self.states(profile["id"]):
                result.append(lcs_entitlement(profile.get("name", ""), state))
        return result


# ----------------------------------------------------------------------
# Reconciler
# ----------------------------------------------------------------------


class EntitlementReconciler:
    """Builds account views from raw identity records and side lookups."""

    def __init__(
        self,
        client: IdentityNowClient,
        capabilities: CapabilityStore,
        lifecycle: LifecycleCatalog,
        features: FeatureConfig,
    ) -> None:
        self._client = client
        self._capabilities = capabilities
        self._lifecycle = lifecycle
        self._features = features

    @property
    def lifecycle(self) -> LifecycleCatalog:
        return self._lifecycle

    def build_workgroup_index(self) -> WorkgroupIndex:
        """Every governance group with its members, fetched group by group."""
        members: dict[str, frozenset[str]] = {}
        for workgroup in self._client.list_workgroups().records():
            logger.debug("Fetching members of %s", workgroup.get("name"))
            members[workgroup["id"]] = frozenset(
                member["id"] for member in self._client.list_workgroup_members(workgroup["id"]).records()
            )
        logger.info("Indexed %d governance groups", len(members), extra={"records": len(members)})
        return WorkgroupIndex(members)

    def build_privileged_index(self) -> PrivilegedIndex:
        index = PrivilegedIndex.from_documents(self._client.list_privileged_identities().records())
        logger.info(
            "Indexed %d privileged identities", len(index.accounts),
            extra={"records": len(index.accounts)},
        )
        return index

    def build_account_view(
        self,
        raw: dict[str, Any],
        workgroup_index: Optional[WorkgroupIndex] = None,
        privileged_index: Optional[PrivilegedIndex] = None,
    ) -> AccountView:
        record = normalize_identity(raw)
        levels: frozenset[str] = frozenset()
        workgroups: frozenset[str] = frozenset()
        lifecycle_state = None

        if self._features.enable_levels:
            levels = self.assigned_levels(record.identity_id, privileged_index)
        if self._features.enable_workgroups:
            workgroups = self.assigned_workgroups(record.identity_id, workgroup_index)
        if self._features.enable_lcs:
            lifecycle_state = self.assigned_lifecycle_state(record)

        return AccountView(
            identity_id=record.identity_id,
            unique_id=record.uid,
            display_name=record.display_name,
            enabled=record.enabled,
            levels=levels,
            workgroups=workgroups,
            lifecycle_state=lifecycle_state,
            first_name=record.first_name,
            last_name=record.last_name,
        )

    def assigned_levels(
        self, identity_id: str, privileged_index: Optional[PrivilegedIndex] = None
    ) -> frozenset[str]:
        if privileged_index is None:
            return frozenset(self._capabilities.get_capabilities(identity_id))
        if identity_id not in privileged_index:
            return frozenset()
        account = privileged_index.accounts[identity_id]
        if account is None or account.assigned_groups is None:
            # Search documents can lag behind; read the identity directly
            logger.info(
                "Privileged identity %s has no indexed levels, reading directly", identity_id,
                extra={"identity_id": identity_id},
            )
            return frozenset(self._capabilities.get_capabilities(identity_id))
        return account.assigned_groups

    def assigned_workgroups(
        self, identity_id: str, workgroup_index: Optional[WorkgroupIndex] = None
    ) -> frozenset[str]:
        index = workgroup_index if workgroup_index is not None else self.build_workgroup_index()
        return index.groups_for(identity_id)

    def assigned_lifecycle_state(self, record: IdentityRecord) -> Optional[str]:
        if not (record.lifecycle_manually_set and record.lifecycle_state_name):
            return None
        return self._lifecycle.state_id_for(record.authoritative_source, record.lifecycle_state_name)
