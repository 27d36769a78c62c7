"""External collaborators driven by the update pipeline.

Each collaborator wraps one shell command (git, the package manager, the
migration engine, the build tool) and reports a :class:`StepOutcome`.
None of them raise; a failure or timeout is ``success=False``.
"""

from __future__ import annotations

import shlex
from pathlib import Path

from stackwarden.config import Settings
from stackwarden.constants import (
    FALLBACK_BUILD_COMMAND,
    FALLBACK_INSTALL_COMMAND,
    PACKAGE_MANAGERS,
)
from stackwarden.logging import get_logger
from stackwarden.shell import run_command
from stackwarden.updater.models import StepOutcome

log = get_logger("stackwarden.updater.steps")


def detect_package_manager(root_dir: Path) -> tuple[str, str] | None:
    """Return (install, build) commands for the first lockfile present."""
    for lockfile, install_cmd, build_cmd in PACKAGE_MANAGERS:
        if (root_dir / lockfile).exists():
            return install_cmd, build_cmd
    return None


class GitFetcher:
    """Pulls upstream changes and reports whether HEAD moved."""

    def __init__(self, settings: Settings) -> None:
        self._cwd = str(settings.root_dir)
        self._timeout = settings.fetch_timeout
        self._default_branch = settings.git_branch

    async def pull(self, branch: str | None = None) -> StepOutcome:
        branch = branch or self._default_branch
        before = await self._head()

        result = await run_command(
            f"git pull origin {shlex.quote(branch)}", cwd=self._cwd, timeout=self._timeout
        )
        if not result.success:
            return StepOutcome(success=False, output=result.output)

        after = await self._head()
        changed = before is None or after is None or before != after
        log.info("git_pull_completed", branch=branch, before=before, after=after)
        return StepOutcome(success=True, output=result.output, changed=changed)

    async def _head(self) -> str | None:
        result = await run_command("git rev-parse HEAD", cwd=self._cwd, timeout=self._timeout)
        if not result.success:
            return None
        return result.stdout.strip() or None


class PackageInstaller:
    """Installs dependencies with the package manager matching the lockfile."""

    def __init__(self, settings: Settings) -> None:
        self._root = settings.root_dir
        self._timeout = settings.install_timeout
        self._override = settings.install_command

    @property
    def command(self) -> str:
        if self._override:
            return self._override
        detected = detect_package_manager(self._root)
        return detected[0] if detected else FALLBACK_INSTALL_COMMAND

    async def install(self) -> StepOutcome:
        command = self.command
        log.info("installing_dependencies", command=command)
        result = await run_command(command, cwd=str(self._root), timeout=self._timeout)
        return StepOutcome(success=result.success, output=result.output)


class MigrationRunner:
    """Applies pending schema migrations."""

    def __init__(self, settings: Settings) -> None:
        self._cwd = str(settings.root_dir)
        self._timeout = settings.migrate_timeout
        self._command = settings.migrate_command

    async def migrate(self) -> StepOutcome:
        log.info("running_migrations", command=self._command)
        result = await run_command(self._command, cwd=self._cwd, timeout=self._timeout)
        return StepOutcome(success=result.success, output=result.output)


class ApplicationBuilder:
    """Builds the application with the detected toolchain."""

    def __init__(self, settings: Settings) -> None:
        self._root = settings.root_dir
        self._timeout = settings.build_timeout
        self._override = settings.build_command

    @property
    def command(self) -> str:
        if self._override:
            return self._override
        detected = detect_package_manager(self._root)
        return detected[1] if detected else FALLBACK_BUILD_COMMAND

    async def build(self) -> StepOutcome:
        command = self.command
        log.info("building_application", command=command)
        result = await run_command(command, cwd=str(self._root), timeout=self._timeout)
        return StepOutcome(success=result.success, output=result.output)
