"""Entitlement catalogue: administrative levels, governance groups and
lifecycle states as emitted by the connector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EntitlementType(str, Enum):
    LEVEL = "level"
    WORKGROUP = "workgroup"
    LCS = "lcs"


@dataclass(frozen=True)
class LevelDefinition:
    name: str
    value: str
    description: str


LEVELS: tuple[LevelDefinition, ...] = (
    LevelDefinition("Helpdesk", "HELPDESK", "Helpdesk access to IdentityNow"),
    LevelDefinition("Administrator", "ORG_ADMIN", "Full administrative access to IdentityNow"),
    LevelDefinition("Cert Administrator", "CERT_ADMIN", "Cert Administrator access to IdentityNow"),
    LevelDefinition("Report Administrator", "REPORT_ADMIN", "Report Administrator access to IdentityNow"),
    LevelDefinition("Role Administrator", "ROLE_ADMIN", "Role Administrator access to IdentityNow"),
    LevelDefinition("Role SubAdministrator", "ROLE_SUBADMIN", "Role SubAdministrator access to IdentityNow"),
    LevelDefinition("Source Administrator", "SOURCE_ADMIN", "Source Administrator access to IdentityNow"),
    LevelDefinition("Source Subadministrator", "SOURCE_SUBADMIN", "Source Subadministrator access to IdentityNow"),
    LevelDefinition("Cloud Gov Admin", "CLOUD_GOV_ADMIN", "Cloud Gov Admin access to IdentityNow"),
    LevelDefinition("Cloud Gov User", "CLOUD_GOV_USER", "Cloud Gov User access to IdentityNow"),
    LevelDefinition(
        "Access Intelligence Center - Reader",
        "sp:aic-dashboard-read",
        "Access Intelligence Center - Reader access to IdentityNow",
    ),
    LevelDefinition(
        "Access Intelligence Center - Author",
        "sp:aic-dashboard-write",
        "Access Intelligence Center - Author access to IdentityNow",
    ),
    LevelDefinition(
        "Access Intelligence Center - Admin",
        "sp:aic-dashboard-admin",
        "Access Intelligence Center - Admin access to IdentityNow",
    ),
    LevelDefinition("SaaS Management - Admin", "SAAS_MANAGEMENT_ADMIN", "Admin access to SaaS Management"),
    LevelDefinition("SaaS Management - Reader", "SAAS_MANAGEMENT_READER", "Reader access to SaaS Management"),
    LevelDefinition(
        "Data Access Security Administrator",
        "das:ui-administrator",
        "Administrator access to Data Access Security",
    ),
    LevelDefinition(
        "Data Access Security Compliance Manager",
        "das:ui-compliance_manager",
        "Compliance Manager access to Data Access Security",
    ),
    LevelDefinition("Data Access Data Owner", "das:ui-data_owner", "Data Owner access to Data Access Security"),
    LevelDefinition("Data Access Security Auditor", "das:ui-auditor", "Auditor access to Data Access Security"),
)


@dataclass(frozen=True)
class Entitlement:
    """Entitlement object sent to the connector sink."""

    type: EntitlementType
    identity: str
    uuid: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_output(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "identity": self.identity,
            "uuid": self.uuid,
            "attributes": dict(self.attributes),
        }


def level_entitlement(level: LevelDefinition) -> Entitlement:
    return Entitlement(
        EntitlementType.LEVEL,
        identity=level.value,
        uuid=level.name,
        attributes={
            "type": "Level",
            "name": level.name,
            "id": level.value,
            "description": level.description,
        },
    )


def workgroup_entitlement(workgroup: dict[str, Any]) -> Entitlement:
    return Entitlement(
        EntitlementType.WORKGROUP,
        identity=workgroup["id"],
        uuid=workgroup.get("name", ""),
        attributes={
            "type": "Governance group",
            "name": workgroup.get("name"),
            "id": workgroup["id"],
            "description": workgroup.get("description"),
        },
    )


def lcs_entitlement(profile_name: str, state: dict[str, Any]) -> Entitlement:
    name = f"{profile_name} - {state['name']}"
    return Entitlement(
        EntitlementType.LCS,
        identity=state["id"],
        uuid=name,
        attributes={
            "type": "Lifecycle state",
            "name": name,
            "id": state["id"],
            "description": f"{state['name']} lifecycle state for {profile_name} identity profile",
        },
    )


def level_entitlements() -> list[Entitlement]:
    return [level_entitlement(level) for level in LEVELS]
