"""Entry point for `python -m dockreach` / `dockreach`.

Subcommands:
    dockreach projects [--profile P] [--base-path PATH]   List compose workloads
    dockreach project NAME [--profile P] [--base-path PATH]
                                                          One workload, with manifest
    dockreach profiles                                    Show configured profiles
    dockreach health                                      Self-diagnostics

Results are printed as JSON on stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from dockreach.errors import DockreachError


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _projects(args: argparse.Namespace) -> int:
    from dockreach.discovery import RemoteDiscovery
    from dockreach.pool import ConnectionPool

    async with ConnectionPool() as pool:
        discovery = RemoteDiscovery(pool.get(args.profile))
        result = await discovery.list_all(args.base_path)
    _print_json(result.to_dict())
    return 0


async def _project(args: argparse.Namespace) -> int:
    from dockreach.discovery import RemoteDiscovery
    from dockreach.pool import ConnectionPool

    async with ConnectionPool() as pool:
        discovery = RemoteDiscovery(pool.get(args.profile))
        workload = await discovery.get_one(args.name, args.base_path)
    if workload is None:
        print(f"Error: no containers found for project {args.name!r}", file=sys.stderr)
        return 1
    _print_json(workload.to_dict())
    return 0


async def _profiles(args: argparse.Namespace) -> int:
    from dockreach.config import get_settings
    from dockreach.profiles import ProfileCatalog

    catalog = ProfileCatalog.from_settings(get_settings())
    _print_json(
        {
            "source": catalog.source,
            "default": catalog.default,
            "profiles": {
                name: {
                    "mode": config.mode,
                    "host": config.host,
                    "username": config.username,
                    "port": config.port,
                    "projectsPath": config.projects_path,
                }
                for name, config in sorted(catalog.profiles.items())
            },
        }
    )
    return 0


async def _health(args: argparse.Namespace) -> int:
    from dockreach.health import check_health
    from dockreach.pool import ConnectionPool

    async with ConnectionPool() as pool:
        report = await check_health(pool)
    _print_json(report.to_dict())
    return 0 if report.status != "unhealthy" else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dockreach",
        description="Inspect compose workloads on local or SSH-tunneled Docker engines",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    target = argparse.ArgumentParser(add_help=False)
    target.add_argument("--profile", help="Connection profile (default: local engine)")
    target.add_argument("--base-path", help="Projects directory on the engine host")

    sub.add_parser("projects", parents=[target], help="List all compose workloads")
    project = sub.add_parser("project", parents=[target], help="Show one compose workload")
    project.add_argument("name", help="Compose project name")
    sub.add_parser("profiles", help="Show configured connection profiles")
    sub.add_parser("health", help="Run self-diagnostics")
    return parser


def main(argv: list[str] | None = None) -> int:
    from dockreach.config import get_settings
    from dockreach.logger import install_excepthook, logger

    install_excepthook()
    args = _build_parser().parse_args(argv)

    try:
        logging.getLogger().setLevel(get_settings().logging.level)
        match args.command:
            case "projects":
                return asyncio.run(_projects(args))
            case "project":
                return asyncio.run(_project(args))
            case "profiles":
                return asyncio.run(_profiles(args))
            case "health":
                return asyncio.run(_health(args))
            case _:
                raise AssertionError(f"unhandled command {args.command!r}")
    except DockreachError as exc:
        logger.debug("Command failed", command=args.command, err=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
