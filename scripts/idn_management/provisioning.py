"""Provisioning: applies entitlement deltas to the backing subsystems.

Each request runs through the same stages::

    FETCH_CURRENT -> COMPUTE_DELTA -> APPLY_WRITES -> SETTLE_DELAY -> REFETCH -> RETURN

Levels are written as one whole-set replace of the capability list,
governance groups with one membership call per group, lifecycle states
with a set call. The platform is eventually consistent, so after any
write the coordinator waits ``settle_delay_seconds`` before re-reading
the account it returns.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from scripts.idn_management.client import CapabilityStore, IdentityNowClient
from scripts.idn_management.config import FeatureConfig
from scripts.idn_management.errors import NotFoundError, ValidationError
from scripts.idn_management.reconciler import (
    AccountView,
    ChangeOp,
    DeltaKind,
    EntitlementDelta,
    EntitlementReconciler,
    IdentityRecord,
    build_deltas,
    merge_deltas,
    normalize_identity,
    platform_account_from_document,
    resulting_capabilities,
    safe_list,
)

logger = logging.getLogger("idn_management.provisioning")

ENTITLEMENT_ATTRIBUTES = ("levels", "workgroups")
LCS_ATTRIBUTE = "lcs"


class ProvisioningStage(str, Enum):
    FETCH_CURRENT = "fetch_current"
    COMPUTE_DELTA = "compute_delta"
    APPLY_WRITES = "apply_writes"
    SETTLE_DELAY = "settle_delay"
    REFETCH = "refetch"
    RETURN = "return"


def _parse_op(raw: Any) -> ChangeOp:
    try:
        return ChangeOp(raw)
    except ValueError:
        raise ValidationError(f"Unsupported operation {raw!r}") from None


def deltas_for_change(identity_id: str, change: dict[str, Any]) -> list[EntitlementDelta]:
    """Deltas for one attribute change of an update request.

    ``levels`` and ``workgroups`` values are routed by shape, so a group
    id listed under ``levels`` still lands on the membership endpoint.
    ``lcs`` is single-valued: ``Set`` behaves as ``Add``. Unknown
    attributes produce nothing.
    """
    attribute = change.get("attribute")
    op = _parse_op(change.get("op"))
    values = safe_list(change.get("value"))
    if attribute in ENTITLEMENT_ATTRIBUTES:
        return build_deltas(identity_id, op, values)
    if attribute == LCS_ATTRIBUTE:
        if op is ChangeOp.SET:
            op = ChangeOp.ADD
        return [EntitlementDelta.for_op(identity_id, DeltaKind.LCS, op, values)]
    logger.warning("Ignoring change of unsupported attribute %r", attribute)
    return []


class ProvisioningCoordinator:
    """Applies deltas for one identity at a time and returns the rebuilt view."""

    def __init__(
        self,
        client: IdentityNowClient,
        capabilities: CapabilityStore,
        reconciler: EntitlementReconciler,
        features: FeatureConfig,
        settle_delay_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._capabilities = capabilities
        self._reconciler = reconciler
        self._features = features
        self._settle_delay = settle_delay_seconds
        self._sleep = sleep

    def apply(self, identity_id: str, delta: EntitlementDelta) -> AccountView:
        return self.apply_all(identity_id, [delta])

    def apply_all(self, identity_id: str, deltas: Iterable[EntitlementDelta]) -> AccountView:
        """Apply every delta, settle once, re-read once."""
        deltas = merge_deltas(deltas)
        for delta in deltas:
            if delta.target != identity_id:
                raise ValidationError(f"Delta for {delta.target} applied to {identity_id}")

        self._stage(ProvisioningStage.FETCH_CURRENT, identity_id)
        record = normalize_identity(self._client.get_identity(identity_id))

        writes = 0
        for delta in deltas:
            writes += self._apply_delta(record, delta)
        return self._finish(identity_id, writes)

    def create_account(self, attributes: dict[str, Any]) -> AccountView:
        """Provision entitlements on the existing identity matching ``uid``."""
        uid = attributes.get("uid")
        if not uid:
            raise ValidationError("Account creation requires a uid")
        logger.info("Fetching identity with uid %s", uid)
        document = self._client.get_identity_by_uid(uid)
        if not document:
            raise NotFoundError(f"Unable to find identity with uid {uid}")
        identity_id = document["id"]

        deltas: list[EntitlementDelta] = []
        for attribute in ENTITLEMENT_ATTRIBUTES:
            if attribute in attributes:
                deltas.extend(build_deltas(identity_id, ChangeOp.ADD, safe_list(attributes[attribute])))
        if attributes.get(LCS_ATTRIBUTE):
            deltas.append(
                EntitlementDelta(identity_id, DeltaKind.LCS, add=frozenset(safe_list(attributes[LCS_ATTRIBUTE])))
            )
        return self.apply_all(identity_id, deltas)

    def update_account(self, identity_id: str, changes: Optional[list[dict[str, Any]]]) -> AccountView:
        """Validate every change first, then apply them as one request."""
        if not changes:
            logger.warning(
                "No changes in account update for %s", identity_id,
                extra={"identity_id": identity_id},
            )
            return self._refetch(identity_id)
        deltas: list[EntitlementDelta] = []
        for change in changes:
            deltas.extend(deltas_for_change(identity_id, change))
        return self.apply_all(identity_id, deltas)

    def set_enabled(self, identity_id: str, enabled: bool) -> AccountView:
        """Enable or disable the identity's platform account.

        On disable, levels and governance groups are stripped as well when
        ``disable_removes_entitlements`` is set and, if
        ``disable_removal_states`` is non-empty, the identity's lifecycle
        state is one of them.
        """
        self._stage(ProvisioningStage.FETCH_CURRENT, identity_id)
        document = self._client.get_identity_document(identity_id)
        if not document:
            raise NotFoundError(f"Identity {identity_id} not found")
        account = platform_account_from_document(document)
        if account is None:
            raise NotFoundError(f"IdentityNow account not found for {identity_id}")

        self._stage(ProvisioningStage.APPLY_WRITES, identity_id)
        if enabled:
            logger.info("Enabling account of %s", identity_id, extra={"identity_id": identity_id})
            self._client.enable_account(account.account_id)
            return self._finish(identity_id, 1)

        logger.info("Disabling account of %s", identity_id, extra={"identity_id": identity_id})
        self._client.disable_account(account.account_id)
        writes = 1
        record = normalize_identity(self._client.get_identity(identity_id))
        if self._should_strip(record):
            for delta in self._strip_deltas(identity_id):
                writes += self._apply_delta(record, delta)
        return self._finish(identity_id, writes)

    def _should_strip(self, record: IdentityRecord) -> bool:
        features = self._features
        if not features.disable_removes_entitlements:
            return False
        if features.disable_removal_states and record.lifecycle_state_name not in features.disable_removal_states:
            logger.info(
                "Keeping entitlements of %s in lifecycle state %s",
                record.identity_id, record.lifecycle_state_name,
                extra={"identity_id": record.identity_id},
            )
            return False
        return True

    def _strip_deltas(self, identity_id: str) -> list[EntitlementDelta]:
        deltas = []
        if self._features.enable_levels:
            levels = self._reconciler.assigned_levels(identity_id)
            if levels:
                deltas.append(EntitlementDelta(identity_id, DeltaKind.LEVEL, remove=levels))
        if self._features.enable_workgroups:
            workgroups = self._reconciler.assigned_workgroups(identity_id)
            if workgroups:
                deltas.append(EntitlementDelta(identity_id, DeltaKind.WORKGROUP, remove=workgroups))
        return deltas

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _apply_delta(self, record: IdentityRecord, delta: EntitlementDelta) -> int:
        """Apply one delta and return the number of write calls issued."""
        if delta.is_empty:
            return 0
        if delta.kind is DeltaKind.LEVEL:
            return self._apply_levels(delta)
        if delta.kind is DeltaKind.WORKGROUP:
            return self._apply_workgroups(delta)
        return self._apply_lifecycle_state(record, delta)

    def _apply_levels(self, delta: EntitlementDelta) -> int:
        identity_id = delta.target
        current = self._capabilities.get_capabilities(identity_id)
        self._stage(ProvisioningStage.COMPUTE_DELTA, identity_id)
        capabilities = resulting_capabilities(current, delta)
        if set(capabilities) == set(current):
            logger.info(
                "Capabilities of %s already up to date", identity_id,
                extra={"identity_id": identity_id},
            )
            return 0
        self._stage(ProvisioningStage.APPLY_WRITES, identity_id)
        logger.info(
            "Setting capabilities of %s to %s", identity_id, capabilities,
            extra={"identity_id": identity_id},
        )
        self._capabilities.set_capabilities(identity_id, capabilities)
        return 1

    def _apply_workgroups(self, delta: EntitlementDelta) -> int:
        identity_id = delta.target
        self._stage(ProvisioningStage.APPLY_WRITES, identity_id)
        for workgroup_id in sorted(delta.add):
            logger.info("Adding %s to governance group %s", identity_id, workgroup_id)
            self._client.modify_workgroup_members(workgroup_id, add=[identity_id])
        for workgroup_id in sorted(delta.remove):
            logger.info("Removing %s from governance group %s", identity_id, workgroup_id)
            self._client.modify_workgroup_members(workgroup_id, remove=[identity_id])
        return len(delta.add) + len(delta.remove)

    def _apply_lifecycle_state(self, record: IdentityRecord, delta: EntitlementDelta) -> int:
        identity_id = delta.target
        if delta.remove:
            # A lifecycle state cannot be unset
            logger.info("Ignoring lifecycle state removal for %s", identity_id)
        writes = 0
        for lifecycle_state_id in delta.add:
            if not self._reconciler.lifecycle.is_valid(lifecycle_state_id, record.authoritative_source):
                logger.warning(
                    "Invalid lifecycle state %s for %s, skipping", lifecycle_state_id, identity_id,
                    extra={"identity_id": identity_id},
                )
                continue
            self._stage(ProvisioningStage.APPLY_WRITES, identity_id)
            logger.info("Setting lifecycle state %s for %s", lifecycle_state_id, identity_id)
            self._client.set_lifecycle_state(identity_id, lifecycle_state_id)
            writes += 1
        return writes

    # ------------------------------------------------------------------
    # Settle and re-read
    # ------------------------------------------------------------------

    def _finish(self, identity_id: str, writes: int) -> AccountView:
        if writes:
            self._stage(ProvisioningStage.SETTLE_DELAY, identity_id)
            self._sleep(self._settle_delay)
        return self._refetch(identity_id)

    def _refetch(self, identity_id: str) -> AccountView:
        self._stage(ProvisioningStage.REFETCH, identity_id)
        view = self._reconciler.build_account_view(self._client.get_identity(identity_id))
        self._stage(ProvisioningStage.RETURN, identity_id)
        return view

    @staticmethod
    def _stage(stage: ProvisioningStage, identity_id: str) -> None:
        logger.debug(
            "Provisioning %s: %s", identity_id, stage.value,
            extra={"identity_id": identity_id, "operation": stage.value},
        )
