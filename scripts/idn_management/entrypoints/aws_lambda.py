"""AWS Lambda handler for the management connector.

Each invocation runs a single connector command.

Event format:
  {"command": "account-list"}
  {"command": "account-read", "input": {"identity": "2c91..."}}
  {"command": "account-update", "input": {"identity": "2c91...", "changes": [...]}}
"""

from __future__ import annotations

import json
import logging
import os
import sys

# Ensure the project root is on sys.path for Lambda packaging
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", ".."))

from scripts.idn_management.cli import run_command
from scripts.idn_management.config import load_config
from scripts.idn_management.connector import build_connector
from scripts.idn_management.errors import (
    ConnectorError,
    ConnectorErrorType,
    PartialRunError,
)
from scripts.idn_management.logging_config import configure_logging

logger = logging.getLogger("idn_management.lambda")


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    command = event.get("command", "")
    if not command:
        return {"statusCode": 400, "body": "Missing 'command' in event"}

    logger.info("Lambda invoked for command=%s", command)

    outputs: list[dict] = []
    try:
        connector = build_connector(load_config())
        report = run_command(connector, command, event.get("input") or {}, outputs.append)
    except ConnectorError as exc:
        logger.error("Command %s failed: %s", command, exc, exc_info=True)
        status = 404 if exc.error_type is ConnectorErrorType.NOT_FOUND else 500
        return {
            "statusCode": status,
            "body": json.dumps({
                "command": command,
                "error": str(exc),
                "errorType": exc.error_type.value,
            }),
        }
    except Exception as exc:
        logger.error("Command %s failed: %s", command, exc, exc_info=True)
        return {
            "statusCode": 500,
            "body": json.dumps({"command": command, "error": str(exc)}),
        }

    status = 200
    body: dict = {"command": command, "outputs": outputs}
    if report is not None:
        body["report"] = report.summary()
        body["errors"] = report.errors
        try:
            report.raise_for_errors()
        except PartialRunError as exc:
            # Outputs of the records that succeeded are still returned
            logger.error("Command %s finished with %s", command, exc)
            status = 207
    logger.info("Command %s complete: %d output(s)", command, len(outputs))
    return {"statusCode": status, "body": json.dumps(body, default=str)}
