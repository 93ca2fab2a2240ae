"""Command line entry point: ``python -m nrql_discovery`` / ``nrql-discover``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from nrql_discovery.config import resolve_config
from nrql_discovery.core.exceptions import ConfigurationError, DiscoveryError
from nrql_discovery.discovery.orchestrator import PHASES, DiscoveryOrchestrator
from nrql_discovery.discovery.progress import ProgressManager, describe_progress
from nrql_discovery.events import EventDispatcher, LoggingListener


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nrql-discover",
        description="Discover the data in a New Relic account through NRQL",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    parser.add_argument("--profile", help="Configuration profile to use")
    parser.add_argument("--env-file", help="Read NEW_RELIC_* settings from this .env file")

    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run or resume discovery (default)")
    run.add_argument("--account-id", type=int, help="Account to discover")
    run.add_argument("--region", choices=["US", "EU"], help="NerdGraph region")
    run.add_argument("--max-schemas", type=int, help="Cap on event types to discover")
    run.add_argument("--output-dir", help="Directory for exported results")
    run.add_argument("--progress-file", help="Checkpoint file path")
    run.add_argument("--dashboard", action="store_true", help="Create a dashboard")
    run.add_argument("--no-cache", action="store_true", help="Disable the result cache")
    run.add_argument("--fresh", action="store_true", help="Ignore any existing checkpoint")

    show = sub.add_parser("config", help="Show resolved configuration and its sources")
    show.add_argument("--json", action="store_true", help="Output as JSON")

    sub.add_parser("progress", help="Show progress recorded in the checkpoint")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for option, field in (
        ("account_id", "account_id"),
        ("region", "region"),
        ("max_schemas", "max_schemas"),
        ("output_dir", "output_dir"),
        ("progress_file", "progress_file"),
    ):
        value = getattr(args, option, None)
        if value is not None:
            overrides[field] = value
    if getattr(args, "dashboard", False):
        overrides["build_dashboard"] = True
    if getattr(args, "no_cache", False):
        overrides["enable_cache"] = False
    return overrides


async def _run(args: argparse.Namespace) -> int:
    config = resolve_config(_overrides(args), profile=args.profile, env_file=args.env_file)
    if getattr(args, "fresh", False):
        ProgressManager(config.progress_file).clear()

    events = EventDispatcher(LoggingListener())
    orchestrator = DiscoveryOrchestrator(config, events=events)
    state = await orchestrator.run()
    stats = state.statistics
    print(
        f"Discovery {state.status.value}: {stats.schemas_discovered} event types, "
        f"{stats.attributes_discovered} attributes, {stats.queries_issued} queries "
        f"({stats.queries_failed} failed, {stats.cache_hits} cached)"
    )
    if orchestrator.export_path:
        print(f"Results exported to {orchestrator.export_path}")
    if state.dashboard and state.dashboard.get("url"):
        print(f"Dashboard: {state.dashboard['url']}")
    return 0


def _show_config(args: argparse.Namespace) -> int:
    _, resolved = resolve_config(
        profile=args.profile, env_file=args.env_file, explain=True
    )
    if args.json:
        redacted = {
            k: ("<redacted>" if k == "api_key" and v else v)
            for k, v in resolved.values.items()
        }
        print(json.dumps({"values": redacted, "origin": dict(resolved.origin)}, indent=2, default=str))
    else:
        print(resolved.audit())
    return 0


async def _show_progress(args: argparse.Namespace) -> int:
    config = resolve_config(profile=args.profile, env_file=args.env_file)
    state = await ProgressManager(config.progress_file).load()
    if state is None:
        print("No usable checkpoint found")
        return 1
    print(json.dumps(describe_progress(state, len(PHASES)), indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "config":
            return _show_config(args)
        if args.command == "progress":
            return asyncio.run(_show_progress(args))
        return asyncio.run(_run(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except DiscoveryError as e:
        print(f"Discovery failed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted; progress has been checkpointed", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
