"""Connector operations: test connection, accounts and entitlements.

Each operation receives its typed input plus a sink callable and emits
zero or more output objects to the sink. Single-account operations raise
``ConnectorError`` subclasses to the caller. Account listing collects
per-identity failures and keeps going, except for ``AuthenticationFailure``
which aborts the run.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import requests

from scripts.idn_management.client import (
    CapabilityStore,
    IdentityNowClient,
    PrivilegedCapabilityClient,
)
from scripts.idn_management.config import ConnectorConfig
from scripts.idn_management.credentials import CredentialBroker
from scripts.idn_management.entitlements import (
    LEVELS,
    Entitlement,
    EntitlementType,
    level_entitlement,
    level_entitlements,
    workgroup_entitlement,
)
from scripts.idn_management.errors import (
    AuthenticationFailure,
    ConnectorError,
    NotFoundError,
    ValidationError,
)
from scripts.idn_management.pagination import PaginatedFetcher
from scripts.idn_management.provisioning import ProvisioningCoordinator
from scripts.idn_management.reconciler import (
    AccountView,
    EntitlementReconciler,
    LifecycleCatalog,
)
from scripts.idn_management.reporting import EmailReporter, RunReport
from scripts.idn_management.transport import RetryingTransport

logger = logging.getLogger("idn_management.connector")

Sink = Callable[[dict[str, Any]], None]

# Failures of the report side channel, logged without masking the operation
_REPORT_ERRORS = (ConnectorError, requests.RequestException)


def parse_entitlement_type(value: str) -> EntitlementType:
    try:
        return EntitlementType(value)
    except ValueError:
        raise ValidationError(f"Unsupported entitlement type {value!r}") from None


class IdentityNowConnector:
    """Standard connector operations over one platform tenant."""

    def __init__(
        self,
        config: ConnectorConfig,
        client: IdentityNowClient,
        capabilities: CapabilityStore,
        reporter: Optional[EmailReporter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._features = config.features
        self._client = client
        self._capabilities = capabilities
        self._reporter = reporter
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Run scaffolding
    # ------------------------------------------------------------------

    def _reconciler(self) -> EntitlementReconciler:
        # Lifecycle catalogue is cached for one operation only
        return EntitlementReconciler(
            self._client,
            self._capabilities,
            LifecycleCatalog(self._client),
            self._features,
        )

    def _coordinator(self, reconciler: EntitlementReconciler) -> ProvisioningCoordinator:
        return ProvisioningCoordinator(
            self._client,
            self._capabilities,
            reconciler,
            self._features,
            settle_delay_seconds=self._config.settle_delay_seconds,
            sleep=self._sleep,
        )

    @contextmanager
    def _operation(self, name: str, payload: Any = None) -> Iterator[RunReport]:
        report = RunReport(operation=name, run_id=uuid.uuid4().hex)
        started = time.monotonic()
        logger.info("Starting %s", name, extra={"operation": name, "run_id": report.run_id})
        try:
            yield report
        except ConnectorError as exc:
            report.add_error(exc.message)
            logger.error(
                "%s failed: %s", name, exc,
                extra={"operation": name, "run_id": report.run_id},
            )
            raise
        finally:
            self._report_errors(report, payload)
            logger.info(
                "Finished %s", name,
                extra={
                    "operation": name,
                    "run_id": report.run_id,
                    "records": report.emitted,
                    "duration_s": round(time.monotonic() - started, 3),
                },
            )

    def _report_errors(self, report: RunReport, payload: Any) -> None:
        if self._reporter is None or not report.has_errors:
            return
        context = {"operation": report.operation, "run_id": report.run_id}
        try:
            self._reporter.send(context, payload, report.errors)
        except _REPORT_ERRORS as exc:
            # The report is a side channel, the operation outcome stands
            logger.error("Sending error report failed: %s", exc, extra={"run_id": report.run_id})

    def _emit_account(self, sink: Sink, view: AccountView) -> None:
        sink(view.to_output(self._features))

    def _should_emit(self, view: AccountView) -> bool:
        features = self._features
        return (
            features.all_identities
            or (features.enable_levels and bool(view.levels))
            or (features.enable_workgroups and bool(view.workgroups))
            or (features.enable_lcs and bool(view.lifecycle_state))
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def test_connection(self, sink: Sink) -> None:
        with self._operation("test_connection"):
            self._client.test_connection()
            logger.info("Test successful")
            sink({})

    def account_list(self, sink: Sink) -> RunReport:
        """Emit every identity holding an enabled entitlement kind.

        With ``all_identities`` every identity is emitted.
        """
        with self._operation("account_list") as report:
            reconciler = self._reconciler()
            workgroup_index = None
            privileged_index = None
            if self._features.enable_workgroups:
                logger.info("Collecting governance groups with membership")
                workgroup_index = reconciler.build_workgroup_index()
            if self._features.enable_levels:
                logger.info("Collecting privileged identities")
                privileged_index = reconciler.build_privileged_index()

            logger.info("Collecting all identities")
            for raw in self._client.list_identities().records():
                identity_id = raw.get("id") if isinstance(raw, dict) else None
                try:
                    view = reconciler.build_account_view(raw, workgroup_index, privileged_index)
                except AuthenticationFailure:
                    raise
                except Exception as exc:
                    # One bad record must not cost the rest of the listing
                    logger.error(
                        "Failed to build account %s: %s", identity_id, exc,
                        exc_info=not isinstance(exc, ConnectorError),
                        extra={"identity_id": identity_id, "run_id": report.run_id},
                    )
                    report.add_error(f"{identity_id}: {exc}")
                    continue
                if self._should_emit(view):
                    self._emit_account(sink, view)
                    report.emitted += 1
                else:
                    logger.debug("Discarding %s", raw.get("name"), extra={"identity_id": identity_id})
                    report.discarded += 1
            logger.info("Account listing summary: %s", report.summary())
            return report

    def account_read(self, identity_id: str, sink: Sink) -> None:
        with self._operation("account_read", {"identity": identity_id}):
            view = self._reconciler().build_account_view(self._client.get_identity(identity_id))
            self._emit_account(sink, view)

    def account_create(self, attributes: dict[str, Any], sink: Sink) -> None:
        with self._operation("account_create", {"attributes": attributes}):
            view = self._coordinator(self._reconciler()).create_account(attributes)
            self._emit_account(sink, view)

    def account_update(
        self, identity_id: str, changes: Optional[list[dict[str, Any]]], sink: Sink
    ) -> None:
        with self._operation("account_update", {"identity": identity_id, "changes": changes}):
            view = self._coordinator(self._reconciler()).update_account(identity_id, changes)
            self._emit_account(sink, view)

    def account_enable(self, identity_id: str, sink: Sink) -> None:
        with self._operation("account_enable", {"identity": identity_id}):
            view = self._coordinator(self._reconciler()).set_enabled(identity_id, True)
            self._emit_account(sink, view)

    def account_disable(self, identity_id: str, sink: Sink) -> None:
        with self._operation("account_disable", {"identity": identity_id}):
            view = self._coordinator(self._reconciler()).set_enabled(identity_id, False)
            self._emit_account(sink, view)

    def entitlement_list(self, entitlement_type: str, sink: Sink) -> None:
        kind = parse_entitlement_type(entitlement_type)
        with self._operation("entitlement_list", {"type": entitlement_type}):
            if not self._kind_enabled(kind):
                logger.info("Entitlement type %s is disabled", kind.value)
                return
            for entitlement in self._entitlements(kind):
                sink(entitlement.to_output())

    def entitlement_read(self, entitlement_type: str, identity: str, sink: Sink) -> None:
        kind = parse_entitlement_type(entitlement_type)
        with self._operation("entitlement_read", {"type": entitlement_type, "identity": identity}):
            sink(self._read_entitlement(kind, identity).to_output())

    # ------------------------------------------------------------------
    # Entitlement helpers
    # ------------------------------------------------------------------

    def _kind_enabled(self, kind: EntitlementType) -> bool:
        return {
            EntitlementType.LEVEL: self._features.enable_levels,
            EntitlementType.WORKGROUP: self._features.enable_workgroups,
            EntitlementType.LCS: self._features.enable_lcs,
        }[kind]

    def _entitlements(self, kind: EntitlementType) -> Iterator[Entitlement]:
        if kind is EntitlementType.LEVEL:
            yield from level_entitlements()
        elif kind is EntitlementType.WORKGROUP:
            for workgroup in self._client.list_workgroups().records():
                yield workgroup_entitlement(workgroup)
        else:
            yield from self._reconciler().lifecycle.entitlements()

    def _read_entitlement(self, kind: EntitlementType, identity: str) -> Entitlement:
        if kind is EntitlementType.LEVEL:
            for level in LEVELS:
                if level.value == identity:
                    return level_entitlement(level)
            raise NotFoundError(f"Level {identity} not found")
        if kind is EntitlementType.WORKGROUP:
            return workgroup_entitlement(self._client.get_workgroup(identity))
        for entitlement in self._reconciler().lifecycle.entitlements():
            if entitlement.identity == identity:
                return entitlement
        raise NotFoundError(f"Lifecycle state {identity} not found")


def build_connector(
    config: ConnectorConfig,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> IdentityNowConnector:
    """Wire broker, transport, fetcher and clients for ``config``.

    Capabilities go through the privileged surface when its login is
    configured, through the primary API otherwise.
    """
    session = session or requests.Session()
    broker = CredentialBroker(
        config.platform,
        config.privileged,
        session=session,
        timeout=config.retry.request_timeout_seconds,
    )
    transport = RetryingTransport(broker, config.retry, session=session, sleep=sleep)
    fetcher = PaginatedFetcher(transport, config.pagination, sleep=sleep)
    client = IdentityNowClient(config.platform.base_url, transport, fetcher)

    capabilities: CapabilityStore = client
    if config.privileged is not None:
        capabilities = PrivilegedCapabilityClient(config.privileged, transport)

    reporter = None
    if config.features.enable_reports:
        reporter = EmailReporter(client, broker, config.report_workflow_name)
        logger.info("Fetching email workflow")
        reporter.ensure_workflow()

    return IdentityNowConnector(config, client, capabilities, reporter=reporter, sleep=sleep)
