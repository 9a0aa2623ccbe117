"""CLI entry point: run one connector operation, print outputs as JSON lines."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, Optional

from scripts.idn_management.config import load_config
from scripts.idn_management.connector import IdentityNowConnector, Sink, build_connector
from scripts.idn_management.errors import ConnectorError, PartialRunError
from scripts.idn_management.logging_config import configure_logging
from scripts.idn_management.reporting import RunReport

logger = logging.getLogger("idn_management.cli")

ENTITLEMENT_CHOICES = ["level", "workgroup", "lcs"]


def _require(payload: dict[str, Any], key: str) -> Any:
    if key not in payload or payload[key] in (None, ""):
        raise ConnectorError(f"Missing '{key}' in command input")
    return payload[key]


COMMANDS: dict[str, Callable[[IdentityNowConnector, dict[str, Any], Sink], Optional[RunReport]]] = {
    "test-connection": lambda c, p, sink: c.test_connection(sink),
    "account-list": lambda c, p, sink: c.account_list(sink),
    "account-read": lambda c, p, sink: c.account_read(_require(p, "identity"), sink),
    "account-create": lambda c, p, sink: c.account_create(_require(p, "attributes"), sink),
    "account-update": lambda c, p, sink: c.account_update(_require(p, "identity"), p.get("changes"), sink),
    "account-enable": lambda c, p, sink: c.account_enable(_require(p, "identity"), sink),
    "account-disable": lambda c, p, sink: c.account_disable(_require(p, "identity"), sink),
    "entitlement-list": lambda c, p, sink: c.entitlement_list(_require(p, "type"), sink),
    "entitlement-read": lambda c, p, sink: c.entitlement_read(
        _require(p, "type"), _require(p, "identity"), sink
    ),
}


def run_command(
    connector: IdentityNowConnector, command: str, payload: dict[str, Any], sink: Sink
) -> Optional[RunReport]:
    """Dispatch ``command`` with its input to the connector."""
    handler = COMMANDS.get(command)
    if handler is None:
        raise ConnectorError(f"Unknown command {command!r}")
    return handler(connector, payload, sink)


def _print_json(obj: dict[str, Any]) -> None:
    print(json.dumps(obj, default=str), flush=True)


def _payload(args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in ("identity", "type"):
        value = getattr(args, key, None)
        if value is not None:
            payload[key] = value
    if getattr(args, "attributes", None):
        payload["attributes"] = json.loads(args.attributes)
    if getattr(args, "changes", None):
        payload["changes"] = json.loads(args.changes)
    return payload


def main() -> None:
    """Main CLI entry point."""
    configure_logging()

    parser = argparse.ArgumentParser(
        prog="idn-management",
        description="IdentityNow management connector",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("test-connection", help="Check credentials and connectivity")
    subparsers.add_parser("account-list", help="List accounts with entitlements")

    for name, help_text in (
        ("account-read", "Read one account"),
        ("account-enable", "Enable an account"),
        ("account-disable", "Disable an account"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("identity", help="Identity id")

    create_parser = subparsers.add_parser("account-create", help="Provision entitlements on an identity")
    create_parser.add_argument(
        "--attributes", "-a",
        required=True,
        help='JSON object, e.g. \'{"uid": "jdoe", "levels": ["HELPDESK"]}\'',
    )

    update_parser = subparsers.add_parser("account-update", help="Apply attribute changes")
    update_parser.add_argument("identity", help="Identity id")
    update_parser.add_argument(
        "--changes", "-c",
        required=True,
        help='JSON list, e.g. \'[{"op": "Add", "attribute": "levels", "value": ["ORG_ADMIN"]}]\'',
    )

    list_ent_parser = subparsers.add_parser("entitlement-list", help="List entitlements of a type")
    list_ent_parser.add_argument("type", choices=ENTITLEMENT_CHOICES)

    read_ent_parser = subparsers.add_parser("entitlement-read", help="Read one entitlement")
    read_ent_parser.add_argument("type", choices=ENTITLEMENT_CHOICES)
    read_ent_parser.add_argument("identity", help="Entitlement id")

    args = parser.parse_args()

    try:
        connector = build_connector(load_config())
        report = run_command(connector, args.command, _payload(args), _print_json)
        if report is not None:
            report.raise_for_errors()
    except PartialRunError as exc:
        logger.error("%s finished with %s", args.command, exc)
        sys.exit(1)
    except ConnectorError as exc:
        logger.error("%s failed: %s", args.command, exc)
        sys.exit(1)
    except Exception as exc:
        logger.error("%s failed: %s", args.command, exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
