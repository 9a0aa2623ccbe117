"""End-to-end connector operations against fakes."""

import json
from unittest.mock import MagicMock

import pytest

from conftest import BASE_URL, make_response, stream
from scripts.idn_management.client import PrivilegedCapabilityClient
from scripts.idn_management.config import ConnectorConfig, FeatureConfig, PaginationConfig, RetryConfig
from scripts.idn_management.connector import IdentityNowConnector, build_connector
from scripts.idn_management.credentials import CredentialBroker
from scripts.idn_management.errors import (
    AuthenticationFailure,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from scripts.idn_management.reporting import EmailReporter
from scripts.idn_management.transport import RetryingTransport

WG_ADMINS = "3b1f4c2e-9a7d-4e10-8f55-0c2d1e6a7b90"


@pytest.fixture
def tenant(platform):
    platform.add_profile("prof-hr", "Employees", "src-hr", [("lcs-active", "Active", "active")])
    platform.add_identity("id-ann", "ann", capabilities=["ORG_ADMIN"])
    platform.add_identity("id-bob", "bob", lifecycle="active", manual=True)
    platform.add_identity("id-cat", "cat")
    platform.add_identity("id-dan", "dan")
    platform.add_workgroup(WG_ADMINS, "Admins", ["id-dan"])
    return platform


def _connector(tenant, platform_config, sleeps, features=None, capabilities=None, reporter=None):
    config = ConnectorConfig(platform=platform_config, features=features or FeatureConfig())
    return IdentityNowConnector(
        config, tenant, capabilities or tenant, reporter=reporter, sleep=sleeps.append
    )


@pytest.fixture
def connector(tenant, platform_config, sleeps):
    return _connector(tenant, platform_config, sleeps)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

def test_account_list_emits_identities_with_entitlements(connector):
    outputs = []

    report = connector.account_list(outputs.append)

    assert sorted(o["identity"] for o in outputs) == ["id-ann", "id-bob", "id-dan"]
    assert report.emitted == 3
    assert report.discarded == 1
    assert not report.has_errors


def test_account_list_all_identities(tenant, platform_config, sleeps):
    connector = _connector(tenant, platform_config, sleeps, FeatureConfig(all_identities=True))
    outputs = []

    connector.account_list(outputs.append)

    assert len(outputs) == 4


def test_account_list_only_counts_enabled_kinds(tenant, platform_config, sleeps):
    connector = _connector(tenant, platform_config, sleeps, FeatureConfig(enable_workgroups=False, enable_lcs=False))
    outputs = []

    connector.account_list(outputs.append)

    assert [o["identity"] for o in outputs] == ["id-ann"]
    assert "workgroups" not in outputs[0]["attributes"]


def test_account_list_authentication_failure_aborts(tenant, platform_config, sleeps, monkeypatch):
    def fail():
        raise AuthenticationFailure("Token request failed")

    monkeypatch.setattr(tenant, "list_identities", fail)
    connector = _connector(tenant, platform_config, sleeps)

    with pytest.raises(AuthenticationFailure):
        connector.account_list(lambda output: None)


def test_privileged_login_failure_only_affects_that_account(
    tenant, platform_config, privileged_config, retry_config, session, sleeps
):
    # id-bob is indexed without assignedGroups and needs a direct capability read
    tenant.unindexed_levels.add("id-bob")
    session.post.return_value = make_response(status_code=500, text="login unavailable")
    broker = CredentialBroker(platform_config, privileged_config, session=session)
    transport = RetryingTransport(broker, retry_config, session=session, sleep=sleeps.append)
    capabilities = PrivilegedCapabilityClient(privileged_config, transport)
    connector = _connector(tenant, platform_config, sleeps, capabilities=capabilities)
    outputs = []

    report = connector.account_list(outputs.append)

    assert [o["identity"] for o in outputs] == ["id-ann", "id-dan"]
    assert len(report.errors) == 1
    assert report.errors[0].startswith("id-bob:")
    assert "No privileged session token" in report.errors[0]
    session.post.assert_called_once()
    session.request.assert_not_called()


def test_malformed_identity_is_collected_and_listing_continues(tenant, platform_config, sleeps, monkeypatch):
    records = [tenant.identities["id-ann"], {"name": "ghost"}, tenant.identities["id-dan"]]
    monkeypatch.setattr(tenant, "list_identities", lambda: stream(records))
    connector = _connector(tenant, platform_config, sleeps)
    outputs = []

    report = connector.account_list(outputs.append)

    assert [o["identity"] for o in outputs] == ["id-ann", "id-dan"]
    assert report.emitted == 2
    assert len(report.errors) == 1
    assert report.errors[0].startswith("None:")


def test_account_read(connector):
    outputs = []

    connector.account_read("id-ann", outputs.append)

    assert outputs[0]["attributes"]["levels"] == ["ORG_ADMIN"]


def test_account_read_not_found(connector):
    with pytest.raises(NotFoundError):
        connector.account_read("id-nobody", lambda output: None)


def test_account_update_emits_rebuilt_account(connector, sleeps):
    outputs = []

    connector.account_update(
        "id-cat", [{"op": "Add", "attribute": "workgroups", "value": WG_ADMINS}], outputs.append
    )

    assert outputs[0]["attributes"]["workgroups"] == [WG_ADMINS]
    assert sleeps == [5.0]


def test_account_create(connector):
    outputs = []

    connector.account_create({"uid": "cat", "levels": ["HELPDESK"]}, outputs.append)

    assert outputs[0]["identity"] == "id-cat"
    assert outputs[0]["attributes"]["levels"] == ["HELPDESK"]


def test_account_disable_and_enable(connector):
    outputs = []

    connector.account_disable("id-ann", outputs.append)
    connector.account_enable("id-ann", outputs.append)

    assert [o["disabled"] for o in outputs] == [True, False]


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------

def test_entitlement_list_levels(connector):
    outputs = []

    connector.entitlement_list("level", outputs.append)

    assert len(outputs) == 19
    assert outputs[1]["identity"] == "ORG_ADMIN"
    assert outputs[1]["uuid"] == "Administrator"


def test_entitlement_list_workgroups(connector):
    outputs = []

    connector.entitlement_list("workgroup", outputs.append)

    assert outputs == [{
        "type": "workgroup",
        "identity": WG_ADMINS,
        "uuid": "Admins",
        "attributes": {"type": "Governance group", "name": "Admins", "id": WG_ADMINS, "description": "Admins group"},
    }]


def test_entitlement_list_lifecycle_states(connector):
    outputs = []

    connector.entitlement_list("lcs", outputs.append)

    assert [o["uuid"] for o in outputs] == ["Employees - Active"]


def test_entitlement_list_disabled_type_emits_nothing(tenant, platform_config, sleeps):
    connector = _connector(tenant, platform_config, sleeps, FeatureConfig(enable_lcs=False))
    outputs = []

    connector.entitlement_list("lcs", outputs.append)

    assert outputs == []


def test_entitlement_read(connector):
    outputs = []

    connector.entitlement_read("level", "HELPDESK", outputs.append)
    connector.entitlement_read("workgroup", WG_ADMINS, outputs.append)
    connector.entitlement_read("lcs", "lcs-active", outputs.append)

    assert [o["identity"] for o in outputs] == ["HELPDESK", WG_ADMINS, "lcs-active"]


@pytest.mark.parametrize("kind, identity", [("level", "NOPE"), ("lcs", "lcs-none"), ("workgroup", "wg-none")])
def test_entitlement_read_not_found(connector, kind, identity):
    with pytest.raises(NotFoundError):
        connector.entitlement_read(kind, identity, lambda output: None)


def test_unsupported_entitlement_type(connector):
    with pytest.raises(ValidationError):
        connector.entitlement_list("role", lambda output: None)


def test_test_connection_emits_empty_output(connector):
    outputs = []

    connector.test_connection(outputs.append)

    assert outputs == [{}]


# ---------------------------------------------------------------------------
# Error reports
# ---------------------------------------------------------------------------

def test_errors_are_reported_by_email(tenant, platform_config, sleeps):
    tenant.add_identity("id-owner", "owner", email="owner@example.com")
    tenant.workflows.append({"id": "wf-1", "name": "IdentityNow Management - Email sender", "owner": {"id": "id-owner"}})
    reporter = EmailReporter(tenant, MagicMock(), "IdentityNow Management - Email sender")
    connector = _connector(tenant, platform_config, sleeps, reporter=reporter)

    with pytest.raises(NotFoundError):
        connector.account_read("id-nobody", lambda output: None)

    sent = [w for w in tenant.writes if w[0] == "test_workflow"]
    assert len(sent) == 1
    _, workflow_id, workflow_input = sent[0]
    assert workflow_id == "wf-1"
    assert workflow_input["recipients"] == ["owner@example.com"]
    assert "Identity id-nobody not found" in workflow_input["body"]


def test_report_failure_does_not_mask_result(tenant, platform_config, sleeps):
    reporter = MagicMock()
    reporter.send.side_effect = AuthorizationError(403, "forbidden", f"{BASE_URL}/beta/workflows")
    connector = _connector(tenant, platform_config, sleeps, reporter=reporter)

    with pytest.raises(NotFoundError):
        connector.account_read("id-nobody", lambda output: None)
    reporter.send.assert_called_once()


def test_successful_operation_sends_no_report(tenant, platform_config, sleeps):
    reporter = MagicMock()
    connector = _connector(tenant, platform_config, sleeps, reporter=reporter)

    connector.account_read("id-ann", lambda output: None)

    reporter.send.assert_not_called()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def test_build_connector_api_auth_failure_surfaces(platform_config, session, sleeps):
    session.post.return_value = make_response(status_code=401, json_data={"error": "invalid_client"})
    config = ConnectorConfig(
        platform=platform_config,
        retry=RetryConfig(max_retries=1),
        pagination=PaginationConfig(page_delay_seconds=0),
        features=FeatureConfig(enable_workgroups=False, enable_levels=False),
    )
    connector = build_connector(config, session=session, sleep=sleeps.append)

    with pytest.raises(AuthenticationFailure):
        connector.account_list(lambda output: None)
    session.request.assert_not_called()


def test_build_connector_reads_over_http(platform_config, session, sleeps):
    session.post.return_value = make_response(json_data={"access_token": "tok", "expires_in": 3600})
    identity = {
        "id": "id-ann",
        "name": "ann",
        "identityStatus": "ACTIVE",
        "attributes": {"uid": "ann", "firstname": "Ann", "lastname": "Lee", "displayName": "Ann Lee"},
    }
    session.request.side_effect = [
        make_response(json_data=identity),
        make_response(json_data={"id": "id-ann", "capabilities": ["HELPDESK"]}),
    ]
    config = ConnectorConfig(
        platform=platform_config,
        features=FeatureConfig(enable_workgroups=False, enable_lcs=False),
    )
    connector = build_connector(config, session=session, sleep=sleeps.append)
    outputs = []

    connector.account_read("id-ann", outputs.append)

    urls = [call.args[1] for call in session.request.call_args_list]
    assert urls == [f"{BASE_URL}/beta/identities/id-ann", f"{BASE_URL}/v3/auth-users/id-ann"]
    assert outputs[0]["attributes"]["levels"] == ["HELPDESK"]
    assert json.dumps(outputs[0])
