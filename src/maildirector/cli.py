"""Summary: Command-line interface for MailDirector.

Importance: Runs the API server and one-off tenant operations from a shell.
Alternatives: Expose every operation through the HTTP API only.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

import uvicorn

from maildirector.api import create_app
from maildirector.app import AppContext, build_context
from maildirector.cleanup import PURGE_KINDS
from maildirector.config import AppConfig


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="MailDirector CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    fetch = subparsers.add_parser("fetch", help="Run one fetch cycle for a tenant")
    fetch.add_argument("uid", type=str)
    fetch.add_argument("--wait", action="store_true", help="Wait for started conversations")

    status = subparsers.add_parser("status", help="Show registry and tenant counts")
    status.add_argument("uid", type=str, nargs="?")

    stats = subparsers.add_parser("stats", help="Show cleanup statistics for a tenant")
    stats.add_argument("uid", type=str)

    purge = subparsers.add_parser("purge", help="Purge a collection for a tenant")
    purge.add_argument("uid", type=str)
    purge.add_argument("kind", type=str, choices=[*PURGE_KINDS, "all"])

    return parser


async def _fetch(context: AppContext, uid: str, wait: bool) -> dict[str, object]:
    state = await context.fetchers.run(uid)
    if wait:
        await context.orchestrator.executor(uid).drain()
    return state.to_dict()


async def _status(context: AppContext, uid: str | None) -> dict[str, object]:
    tenants = context.registry.known_tenants()
    report: dict[str, object] = {"tenants": len(tenants), "known": tenants}
    if uid:
        report["cleanup"] = (await context.cleanup.stats(uid)).to_dict()
    return report


async def _purge(context: AppContext, uid: str, kind: str) -> dict[str, object]:
    if kind == "all":
        return (await context.cleanup.purge_all(uid)).to_dict()
    return {"kind": kind, "removed": await context.cleanup.purge(uid, kind)}


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives local operation without a UI.
    Alternatives: Invoke services via the HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        uvicorn.run(
            create_app(config),
            host=args.host or config.api_host,
            port=args.port or config.api_port,
        )
        return

    context = build_context(config)
    if args.command == "fetch":
        result = asyncio.run(_fetch(context, args.uid, args.wait))
    elif args.command == "status":
        result = asyncio.run(_status(context, args.uid))
    elif args.command == "stats":
        result = asyncio.run(context.cleanup.stats(args.uid)).to_dict()
    else:
        result = asyncio.run(_purge(context, args.uid, args.kind))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    run_cli()
