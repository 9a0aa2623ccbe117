"""Run error collection and the optional email error report.

Errors collected during an operation can be mailed to the owner of an
external-trigger workflow on the platform. The workflow is created on
first use, owned by the identity the API client acts as.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import jwt

from scripts.idn_management.client import IdentityNowClient
from scripts.idn_management.credentials import CredentialBroker
from scripts.idn_management.errors import ConnectorError, PartialRunError

logger = logging.getLogger("idn_management.reporting")

REPORT_SUBJECT = "IdentityNow Management error report"
SUCCESS_STEP = "End Step — Success"
SEND_STEP = "Send Email"


@dataclass
class RunReport:
    """Outcome of one connector operation."""

    operation: str
    run_id: str
    emitted: int = 0
    discarded: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialRunError(self.errors)

    def summary(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "run_id": self.run_id,
            "emitted": self.emitted,
            "discarded": self.discarded,
            "errors": len(self.errors),
        }


def workflow_definition(name: str, owner_id: str) -> dict[str, Any]:
    """Workflow sending one email built from its external trigger input."""
    return {
        "name": name,
        "owner": {"id": owner_id, "type": "IDENTITY"},
        "definition": {
            "start": SEND_STEP,
            "steps": {
                SUCCESS_STEP: {"type": "success"},
                SEND_STEP: {
                    "actionId": "sp:send-email",
                    "attributes": {
                        "body.$": "$.trigger.body",
                        "context": {},
                        "recipientEmailList.$": "$.trigger.recipients",
                        "subject.$": "$.trigger.subject",
                    },
                    "nextStep": SUCCESS_STEP,
                    "type": "action",
                    "versionNumber": 2,
                },
            },
        },
        "trigger": {"type": "EXTERNAL", "attributes": {"id": "idn:external:id"}},
    }


def token_identity_id(token: str) -> str:
    """Identity id claim of an API token. The signature is not checked."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise ConnectorError(f"Unable to decode API token: {exc}") from exc
    identity_id = claims.get("identity_id")
    if not identity_id:
        raise ConnectorError("API token carries no identity_id claim")
    return identity_id


def format_report(context: Any, payload: Any, errors: list[str]) -> str:
    lines = [
        f"Context: {json.dumps(context, default=str)}",
        f"Input: {json.dumps(payload, default=str)}",
        "Errors:",
    ]
    lines.extend(errors)
    return "\n".join(lines)


class EmailReporter:
    """Sends error reports through the email workflow."""

    def __init__(self, client: IdentityNowClient, broker: CredentialBroker, workflow_name: str) -> None:
        self._client = client
        self._broker = broker
        self._workflow_name = workflow_name
        self._workflow: Optional[dict[str, Any]] = None

    def ensure_workflow(self) -> dict[str, Any]:
        if self._workflow is not None:
            return self._workflow
        for workflow in self._client.list_workflows():
            if workflow.get("name") == self._workflow_name:
                logger.info("Email workflow already present")
                self._workflow = workflow
                return workflow
        logger.info("Creating email workflow %s", self._workflow_name)
        owner_id = token_identity_id(self._broker.get_api_token())
        self._workflow = self._client.create_workflow(workflow_definition(self._workflow_name, owner_id))
        return self._workflow

    def send(self, context: Any, payload: Any, errors: list[str]) -> bool:
        """Mail ``errors`` to the workflow owner. False when there is nothing to send."""
        if not errors:
            return False
        workflow = self.ensure_workflow()
        owner_id = (workflow.get("owner") or {}).get("id")
        owner = self._client.get_identity_document(owner_id) if owner_id else None
        email = ((owner or {}).get("attributes") or {}).get("email")
        if not email:
            logger.warning("Workflow owner %s has no email address, report not sent", owner_id)
            return False
        self._client.test_workflow(
            workflow["id"],
            {
                "recipients": [email],
                "subject": REPORT_SUBJECT,
                "body": format_report(context, payload, errors),
            },
        )
        logger.info("Sent error report with %d error(s)", len(errors), extra={"records": len(errors)})
        return True
