"""Update orchestrator: drives an in-place upgrade with automatic rollback.

Lifecycle:
1. Pre-update health check (an unhealthy system is never touched)
2. Back up critical configuration and lock files
3. Pull upstream changes (nothing new ends the run successfully)
4. Install dependencies
5. Run schema migrations
6. Build the application
7. Post-update health check
8. On any failure from step 2 onward, restore the backup made in this run
"""

from __future__ import annotations

import asyncio
import json
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from stackwarden.config import Settings
from stackwarden.constants import STATE_FILE
from stackwarden.errors import (
    PreconditionError,
    RollbackError,
    StageError,
    ValidationError,
)
from stackwarden.health.probe import HealthCheck, HealthProbe
from stackwarden.logging import bind_update_run, get_logger
from stackwarden.updater.backup import BackupManager
from stackwarden.updater.models import (
    Backup,
    StepOutcome,
    UpdateInfo,
    UpdateOptions,
    UpdateResult,
    UpdateState,
)
from stackwarden.updater.steps import (
    ApplicationBuilder,
    GitFetcher,
    MigrationRunner,
    PackageInstaller,
)
from stackwarden.utils import timed_operation, utc_now_iso
from stackwarden.versioning import compare, parse

if TYPE_CHECKING:
    from stackwarden.runtime import DockerRuntime

log = get_logger("stackwarden.updater.orchestrator")

GITHUB_API_URL = "https://api.github.com"
FALLBACK_VERSION = "0.1.0"
_MAX_OUTPUT_IN_ERROR = 1000


class UpdateOrchestrator:
    """Runs the update state machine for one deployment root.

    Typical flow:
    1. ``check_for_updates()`` to compare against the latest release
    2. ``update()`` to apply upstream changes, rolling back on failure
    """

    def __init__(
        self,
        settings: Settings,
        health_probe: HealthProbe,
        backups: BackupManager,
        fetcher: GitFetcher,
        installer: PackageInstaller,
        migrator: MigrationRunner,
        builder: ApplicationBuilder,
        release_api_url: str = GITHUB_API_URL,
    ) -> None:
        self._settings = settings
        self._root = Path(settings.root_dir)
        self._health = health_probe
        self._backups = backups
        self._fetcher = fetcher
        self._installer = installer
        self._migrator = migrator
        self._builder = builder
        self._release_api_url = release_api_url.rstrip("/")
        self._state_path = backups.backup_dir / STATE_FILE
        self._lock = asyncio.Lock()
        self._state = UpdateState.IDLE
        self._current_operation: str | None = None
        self._runtime_state = self._load_state()

    @classmethod
    def from_settings(cls, settings: Settings, runtime: DockerRuntime) -> UpdateOrchestrator:
        """Wire the default shell-backed collaborators for *settings*."""
        installer = PackageInstaller(settings)
        return cls(
            settings=settings,
            health_probe=HealthProbe(settings, runtime),
            backups=BackupManager(
                root_dir=settings.root_dir,
                backup_dir=settings.resolved_backup_dir,
                installer=installer,
            ),
            fetcher=GitFetcher(settings),
            installer=installer,
            migrator=MigrationRunner(settings),
            builder=ApplicationBuilder(settings),
        )

    # ------------------------------------------------------------------
    # Public status surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> UpdateState:
        return self._state

    @property
    def current_operation(self) -> str | None:
        return self._current_operation

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def backups(self) -> BackupManager:
        return self._backups

    @property
    def current_version(self) -> str:
        """Installed version read from the configured version file."""
        path = self._root / self._settings.version_file
        try:
            text = path.read_text(encoding="utf-8")
            if path.suffix == ".json":
                raw = json.loads(text)["version"]
            elif path.suffix == ".toml":
                raw = tomllib.loads(text)["project"]["version"]
            else:
                raw = text.strip()
            return str(parse(str(raw)))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("updater_version_unreadable", path=str(path), error=str(exc))
            return FALLBACK_VERSION

    async def health_check(self) -> HealthCheck:
        """Run the health probes without starting an update."""
        return await self._health.check()

    def status_snapshot(self) -> dict[str, Any]:
        """Return orchestrator status fields for API responses."""
        return {
            "state": self._state.value,
            "current_operation": self._current_operation,
            "busy": self.is_busy,
            "current_version": self.current_version,
            "last_success_at": self._runtime_state.get("last_success_at"),
            "last_failure_at": self._runtime_state.get("last_failure_at"),
            "last_result": self._runtime_state.get("last_result"),
        }

    # ------------------------------------------------------------------
    # Check for updates
    # ------------------------------------------------------------------

    async def check_for_updates(self, remote_repo: str | None = None) -> UpdateInfo:
        """Compare the installed version with the latest published release.

        Any network, HTTP or parse failure yields ``available=False``; the
        cause is logged rather than raised.
        """
        current = self.current_version
        unknown = UpdateInfo(available=False, current_version=current, latest_version=current)

        repo = remote_repo or self._settings.github_repo
        if not repo:
            log.warning("updater_no_release_repo")
            return unknown

        headers: dict[str, str] = {"Accept": "application/vnd.github+json"}
        if self._settings.github_token:
            headers["Authorization"] = f"Bearer {self._settings.github_token.get_secret_value()}"

        try:
            async with httpx.AsyncClient(timeout=30) as client:
                resp = await client.get(
                    f"{self._release_api_url}/repos/{repo}/releases/latest",
                    headers=headers,
                )

            if resp.status_code == 404:
                log.debug("updater_no_releases", repo=repo)
                return unknown
            if resp.status_code != 200:
                log.warning("updater_release_api_error", repo=repo, status=resp.status_code)
                return unknown

            data = resp.json()
            latest_str = str(data["tag_name"]).strip().removeprefix("v")
            latest = parse(latest_str)
            local = parse(current)
        except httpx.HTTPError as exc:
            log.warning("updater_check_failed", repo=repo, error=str(exc))
            return unknown
        except (ValueError, KeyError, TypeError) as exc:
            log.warning("updater_release_unparseable", repo=repo, error=str(exc))
            return unknown

        info = UpdateInfo(
            available=compare(local, latest) < 0,
            current_version=current,
            latest_version=latest_str,
            breaking=latest.major > local.major,
            changelog=data.get("body"),
            release_date=data.get("published_at"),
            download_url=data.get("tarball_url"),
        )
        if info.available:
            log.info(
                "updater_new_release_found",
                current=current,
                latest=latest_str,
                breaking=info.breaking,
            )
        else:
            log.debug("updater_up_to_date", current=current, latest=latest_str)
        return info

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(self, options: UpdateOptions | None = None) -> UpdateResult:
        """Apply upstream changes to the installation.

        Never raises for stage failures; the returned result records what
        changed and why the run failed.
        """
        options = options or UpdateOptions()
        if self._lock.locked():
            return UpdateResult(
                success=False,
                previous_version=self.current_version,
                errors=["Update already in progress"],
                state=UpdateState.FAILED,
            )

        async with self._lock:
            with bind_update_run(branch=options.branch or self._settings.git_branch):
                async with timed_operation("updater_run", log=log) as timing:
                    result = await self._do_update(options)
            result.duration_seconds = round(timing["elapsed_ms"] / 1000, 2)
            return result

    async def _do_update(self, options: UpdateOptions) -> UpdateResult:
        previous = self.current_version
        result = UpdateResult(success=False, previous_version=previous)
        backup: Backup | None = None
        touched = False

        try:
            self._enter(result, UpdateState.PRE_HEALTH_CHECK, "Running pre-update health check")
            pre = await self._health.check()
            if not pre.healthy:
                raise PreconditionError(pre.errors)
            result.changes.append("Pre-update health check passed")
            touched = True

            if not options.skip_backup:
                self._enter(result, UpdateState.BACKING_UP, "Creating backup")
                backup = self._backups.create_backup(previous)
                result.backup_path = backup.path
                result.rollback_available = True
                result.changes.append(f"Backup created at {backup.path}")

            self._enter(result, UpdateState.FETCHING, "Pulling upstream changes")
            fetched = await self._fetcher.pull(options.branch)
            self._require(fetched, "fetch", "Git pull failed")
            result.changes.append("Git pull completed")

            if fetched.changed is False:
                result.new_version = previous
                result.success = True
                result.state = UpdateState.SUCCEEDED
                log.info("updater_nothing_to_apply", version=previous)
                return result

            self._enter(result, UpdateState.INSTALLING_DEPS, "Installing dependencies")
            installed = await self._installer.install()
            self._require(installed, "install", "Dependency installation failed")
            result.changes.append("Dependencies installed")

            if not options.skip_migrations:
                self._enter(result, UpdateState.MIGRATING, "Running database migrations")
                migrated = await self._migrator.migrate()
                self._require(migrated, "migrate", "Migration failed")
                result.changes.append("Database migrations completed")

            if not options.skip_build:
                self._enter(result, UpdateState.BUILDING, "Building application")
                built = await self._builder.build()
                self._require(built, "build", "Build failed")
                result.changes.append("Application built successfully")

            result.new_version = self.current_version

            self._enter(result, UpdateState.POST_HEALTH_CHECK, "Running post-update health check")
            post = await self._health.check()
            if not post.healthy:
                raise StageError(
                    "post_health_check",
                    "Post-update health check failed: " + ", ".join(post.errors),
                )
            result.changes.append("Post-update health check passed")

            result.success = True
            result.state = UpdateState.SUCCEEDED
            log.info("updater_success", previous=previous, new=result.new_version)
            self._prune_backups()
            return result

        except PreconditionError as exc:
            result.errors.append(str(exc))
            result.state = UpdateState.FAILED
            log.warning("updater_precondition_failed", failed=exc.failed_checks)
            return result
        except StageError as exc:
            result.errors.append(str(exc))
            log.warning("updater_stage_failed", stage=exc.stage, state=result.state.value)
            await self._recover(result, backup)
            return result
        except Exception as exc:
            result.errors.append(f"Update failed: {exc}")
            log.exception("updater_unexpected_error", state=result.state.value)
            await self._recover(result, backup)
            return result
        finally:
            result.completed_at = utc_now_iso()
            self._state = result.state
            self._current_operation = None
            if touched:
                self._record_result(result)

    async def _recover(self, result: UpdateResult, backup: Backup | None) -> None:
        """Restore the backup made in this run, if there is one."""
        if backup is None:
            result.state = UpdateState.FAILED
            log.error("updater_failed_without_backup")
            return

        self._current_operation = f"Rolling back to {backup.path}"
        try:
            await self._backups.rollback(backup.path)
        except RollbackError as exc:
            result.errors.append(f"Rollback failed: {exc}")
            result.state = UpdateState.FAILED
            log.critical("updater_rollback_failed", backup=backup.path, error=str(exc))
            return

        result.rolled_back = True
        result.state = UpdateState.ROLLED_BACK
        log.info("updater_rolled_back", backup=backup.path)

    def _prune_backups(self) -> None:
        """Apply the retention policy after a successful run."""
        try:
            self._backups.clean_old_backups(self._settings.backup_retention)
        except (OSError, ValidationError) as exc:
            log.warning("updater_backup_prune_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, result: UpdateResult, state: UpdateState, operation: str) -> None:
        result.state = state
        self._state = state
        self._current_operation = operation
        log.debug("updater_stage", state=state.value)

    @staticmethod
    def _require(outcome: StepOutcome, stage: str, prefix: str) -> None:
        if not outcome.success:
            raise StageError(stage, f"{prefix}: {outcome.output[:_MAX_OUTPUT_IN_ERROR]}")

    def _record_result(self, result: UpdateResult) -> None:
        key = "last_success_at" if result.success else "last_failure_at"
        self._runtime_state[key] = result.completed_at
        self._runtime_state["last_result"] = result.to_dict()
        self._save_state()

    def _load_state(self) -> dict[str, Any]:
        if not self._state_path.exists():
            return {}
        try:
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            log.warning("updater_state_load_failed", path=str(self._state_path))
            return {}
        return data if isinstance(data, dict) else {}

    def _save_state(self) -> None:
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._state_path.with_suffix(".tmp")
            tmp_path.write_text(
                json.dumps(self._runtime_state, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            tmp_path.replace(self._state_path)
        except OSError:
            log.exception("updater_state_save_failed", path=str(self._state_path))
