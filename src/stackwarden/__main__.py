"""Command-line entry point for Stackwarden.

Examples::

    python -m stackwarden check
    python -m stackwarden update --skip-build
    python -m stackwarden backups clean --keep 3
    python -m stackwarden containers update api worker
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from stackwarden.config import Settings, get_settings
from stackwarden.constants import DEFAULT_BACKUP_RETENTION
from stackwarden.containers.manager import ContainerLifecycleManager
from stackwarden.errors import RollbackError, ValidationError
from stackwarden.logging import get_logger, setup_logging
from stackwarden.runtime import DockerRuntime
from stackwarden.updater.models import UpdateOptions
from stackwarden.updater.orchestrator import UpdateOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackwarden", description="Self-update and container lifecycle orchestration"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Check the release index for a newer version")
    check.add_argument("--repo", help="owner/name of the release repository")

    sub.add_parser("health", help="Run the health probes")

    update = sub.add_parser("update", help="Update the installation in place")
    update.add_argument("--branch", help="Branch to pull (default: configured branch)")
    update.add_argument("--skip-backup", action="store_true", help="Do not take a backup")
    update.add_argument("--skip-migrations", action="store_true", help="Do not run migrations")
    update.add_argument("--skip-build", action="store_true", help="Do not rebuild")

    backups = sub.add_parser("backups", help="Manage backups")
    backups_sub = backups.add_subparsers(dest="action", required=True)
    backups_sub.add_parser("list", help="List backups, newest first")
    clean = backups_sub.add_parser("clean", help="Delete all but the newest backups")
    clean.add_argument(
        "--keep",
        type=int,
        default=DEFAULT_BACKUP_RETENTION,
        help=f"Backups to keep (default: {DEFAULT_BACKUP_RETENTION})",
    )
    restore = backups_sub.add_parser("rollback", help="Restore a backup")
    restore.add_argument("path", help="Backup directory to restore")

    containers = sub.add_parser("containers", help="Manage containers")
    containers_sub = containers.add_subparsers(dest="action", required=True)
    containers_sub.add_parser("list", help="List managed containers")
    containers_sub.add_parser("check", help="Check managed containers for image updates")
    cupdate = containers_sub.add_parser("update", help="Update containers one by one")
    cupdate.add_argument("names", nargs="*", help="Container names (default: all managed)")
    stack = containers_sub.add_parser("stack", help="Pull and recreate the compose stack")
    stack.add_argument("--compose-file", help="Compose file (default: configured file)")
    containers_sub.add_parser("prune", help="Remove dangling images")

    return parser


async def run(args: argparse.Namespace, settings: Settings) -> tuple[bool, Any]:
    """Execute one command and return (success, JSON-serialisable payload)."""
    runtime = DockerRuntime(base_url=settings.docker_host, timeout=settings.runtime_timeout)

    if args.command in ("check", "health", "update", "backups"):
        orchestrator = UpdateOrchestrator.from_settings(settings, runtime)

        if args.command == "check":
            info = await orchestrator.check_for_updates(args.repo)
            return True, info.to_dict()

        if args.command == "health":
            report = await orchestrator.health_check()
            return report.healthy, report.to_dict()

        if args.command == "update":
            result = await orchestrator.update(
                UpdateOptions(
                    branch=args.branch,
                    skip_backup=args.skip_backup,
                    skip_migrations=args.skip_migrations,
                    skip_build=args.skip_build,
                )
            )
            return result.success, result.to_dict()

        backups = orchestrator.backups
        if args.action == "list":
            return True, [b.to_dict() for b in backups.list_backups()]
        if args.action == "clean":
            return True, {"deleted": backups.clean_old_backups(args.keep)}
        return await backups.rollback(args.path), {"restored": args.path}

    manager = ContainerLifecycleManager(settings, runtime)
    manager.progress.subscribe(
        lambda event: print(json.dumps(event.to_dict()), file=sys.stderr, flush=True)
    )

    if args.action == "list":
        return True, [c.to_dict() for c in await manager.get_managed_containers()]
    if args.action == "check":
        return True, [info.to_dict() for info in await manager.check_for_image_updates()]
    if args.action == "update":
        names = args.names or [c.name for c in await manager.get_managed_containers()]
        batch = await manager.update_containers(names)
        return batch.success, batch.to_dict()
    if args.action == "stack":
        stack_result = await manager.update_stack(args.compose_file)
        return stack_result.success, stack_result.to_dict()
    pruned = await manager.prune_images()
    return pruned.success, pruned.to_dict()


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    log = get_logger("stackwarden.main")

    try:
        ok, payload = asyncio.run(run(args, settings))
    except (ValidationError, RollbackError) as exc:
        log.error("command_failed", command=args.command, error=str(exc))
        print(json.dumps({"success": False, "error": str(exc)}, indent=2))
        return 1

    print(json.dumps(payload, indent=2, default=str))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
