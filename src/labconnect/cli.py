"""Command-line interface for labconnect."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import aiohttp

from labconnect.client import LabClient
from labconnect.config import SSO_DOMAINS_KEY, Config
from labconnect.consent import terminal_consent_prompt
from labconnect.exceptions import LabConnectError

_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

# ``config set sso_domain X`` appends to the host's approved domains.
_SSO_DOMAIN_KEY = "sso_domain"


def _print_json(data: Any) -> None:
    """Print a decoded API response."""
    if data is None:
        return
    print(json.dumps(data, indent=2, sort_keys=True))


def _parse_fields(fields: list[str]) -> dict[str, Any]:
    """Turn ``key=value`` arguments into a JSON payload.

    Values that parse as JSON (numbers, booleans, null) keep their type;
    everything else is sent as a string.
    """
    payload: dict[str, Any] = {}
    for field in fields:
        if "=" not in field:
            msg = f"invalid field {field!r}, expected key=value"
            raise ValueError(msg)
        key, raw = field.split("=", 1)
        try:
            payload[key] = json.loads(raw)
        except json.JSONDecodeError:
            payload[key] = raw
    return payload


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


async def cmd_api(
    client: LabClient,
    method: str,
    endpoint: str,
    fields: list[str],
) -> None:
    """Perform a raw API request and print the JSON response."""
    payload = _parse_fields(fields) if fields else None
    result = await client.api(method, endpoint, json=payload)
    _print_json(result)


async def cmd_note_create(
    client: LabClient,
    project: str,
    mr_iid: int,
    message: str,
) -> None:
    """Comment on a merge request."""
    note = await client.create_merge_request_note(project, mr_iid, message)
    print(f"Note #{note.get('id')} added to !{mr_iid}.")


def cmd_config_get(config: Config, key: str, host: str | None) -> None:
    """Print a configuration value."""
    if key in (_SSO_DOMAIN_KEY, SSO_DOMAINS_KEY):
        print("\n".join(config.sso_domains(host or config.default_host())))
        return
    value = config.get(key, host)
    if value is not None:
        print(value)


def cmd_config_set(config: Config, key: str, value: str, host: str | None) -> None:
    """Store a configuration value."""
    if key in (_SSO_DOMAIN_KEY, SSO_DOMAINS_KEY):
        target = host or config.default_host()
        if not config.add_sso_domain(target, value):
            print(f"{value} is already approved for {target}.")
            return
    else:
        config.set(key, value, host)
    config.save()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argparse parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="labconnect",
        description="Work with GitLab-style platforms behind SSO from the command line",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Platform hostname (defaults to the configured host)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # api
    sp_api = subparsers.add_parser("api", help="Make an authenticated API request")
    sp_api.add_argument("endpoint", help="Endpoint path, e.g. projects/1/issues")
    sp_api.add_argument(
        "-X",
        "--method",
        default="GET",
        type=str.upper,
        choices=_METHODS,
        help="HTTP method (default: GET)",
    )
    sp_api.add_argument(
        "-f",
        "--field",
        action="append",
        default=[],
        help="Add a key=value field to the JSON body",
    )

    # note
    sp_note = subparsers.add_parser("note", help="Work with merge request notes")
    note_sub = sp_note.add_subparsers(dest="note_command", required=True)
    sp_note_create = note_sub.add_parser("create", help="Comment on a merge request")
    sp_note_create.add_argument("project", help="Project id or namespace/name")
    sp_note_create.add_argument("mr_iid", type=int, help="Merge request IID")
    sp_note_create.add_argument("-m", "--message", required=True, help="Note text")

    # config
    sp_config = subparsers.add_parser("config", help="Read or change configuration")
    config_sub = sp_config.add_subparsers(dest="config_command", required=True)
    sp_get = config_sub.add_parser("get", help="Print a configuration value")
    sp_get.add_argument("key")
    sp_set = config_sub.add_parser("set", help="Set a configuration value")
    sp_set.add_argument("key")
    sp_set.add_argument("value")

    return parser


# ---------------------------------------------------------------------------
# Async entry point
# ---------------------------------------------------------------------------


async def async_main(args: argparse.Namespace, config: Config) -> None:
    """Run the appropriate subcommand."""
    if args.command == "config":
        if args.config_command == "get":
            cmd_config_get(config, str(args.key), args.host)
        else:
            cmd_config_set(config, str(args.key), str(args.value), args.host)
        return

    client = LabClient.from_config(
        config,
        args.host,
        consent_callback=terminal_consent_prompt(),
    )
    async with client:
        if args.command == "api":
            await cmd_api(client, args.method, str(args.endpoint), list(args.field))
        elif args.command == "note":
            await cmd_note_create(
                client, str(args.project), int(args.mr_iid), str(args.message)
            )


# ---------------------------------------------------------------------------
# Synchronous entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Entry point for the labconnect CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )
    try:
        config = Config()
        asyncio.run(async_main(args, config))
    except (LabConnectError, aiohttp.ClientError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
