"""Snapshot and restore of critical configuration files.

A backup is a directory ``backup-<version>-<timestamp>/`` under the backup
root holding copies of an allow-listed set of lockfiles, the environment
file and compose definitions, plus a ``backup-metadata.json`` record.
Only the allow-listed files are copied; nothing inside them is redacted.
"""

from __future__ import annotations

import json
import platform
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stackwarden.constants import (
    BACKUP_DIR_PREFIX,
    BACKUP_FILES,
    BACKUP_METADATA_FILE,
    DEFAULT_BACKUP_RETENTION,
)
from stackwarden.errors import BackupError, RollbackError, ValidationError
from stackwarden.logging import get_logger
from stackwarden.updater.models import Backup
from stackwarden.utils import parse_iso

if TYPE_CHECKING:
    from stackwarden.updater.steps import PackageInstaller

log = get_logger("stackwarden.updater.backup")

_UNKNOWN = "unknown"


class BackupManager:
    """Creates, lists, restores and prunes backups for one deployment root."""

    def __init__(
        self,
        root_dir: Path,
        backup_dir: Path,
        installer: PackageInstaller,
        files: tuple[str, ...] = BACKUP_FILES,
    ) -> None:
        self._root = Path(root_dir)
        self._backup_dir = Path(backup_dir)
        self._installer = installer
        self._files = files

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_backup(self, version: str) -> Backup:
        """Copy the allow-listed files into a new timestamped backup.

        Raises:
            BackupError: if the snapshot cannot be written. The partially
                written directory is removed.
        """
        now = datetime.now(UTC)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = self._backup_dir / f"{BACKUP_DIR_PREFIX}{version}-{stamp}"

        try:
            backup_path.mkdir(parents=True, exist_ok=False)
            copied: list[str] = []
            for rel in self._files:
                src = self._root / rel
                if not src.is_file():
                    continue
                dest = backup_path / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
                copied.append(rel)

            metadata = {
                "version": version,
                "timestamp": now.isoformat(),
                "runtimeVersion": platform.python_version(),
                "platform": platform.system().lower(),
                "files": copied,
            }
            (backup_path / BACKUP_METADATA_FILE).write_text(
                json.dumps(metadata, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            log.error("backup_create_failed", path=str(backup_path), error=str(exc))
            shutil.rmtree(backup_path, ignore_errors=True)
            raise BackupError(f"Backup failed: {exc}") from exc

        log.info("backup_created", path=str(backup_path), files=len(copied))
        return Backup(
            path=str(backup_path),
            version=version,
            timestamp=metadata["timestamp"],
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def rollback(self, backup_path: str | Path) -> bool:
        """Restore every file in *backup_path* and reinstall dependencies.

        Allow-listed files created after the backup was taken, such as a
        lockfile added by the pull, are deleted so the reinstall uses the
        same package manager as before. Migrations and the build are not
        re-run; the restored files are expected to bring back the previously
        working state.

        Raises:
            RollbackError: if the backup is missing, a file cannot be
                restored, or the dependency reinstall fails.
        """
        source = Path(backup_path)
        log.info("rollback_started", path=str(source))

        if not source.is_dir():
            raise RollbackError(str(source), "Backup directory not found")

        try:
            for src in sorted(source.rglob("*")):
                if not src.is_file() or src.name == BACKUP_METADATA_FILE:
                    continue
                dest = self._root / src.relative_to(source)
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            self._remove_added_files(source)
        except OSError as exc:
            log.critical("rollback_restore_failed", path=str(source), error=str(exc))
            raise RollbackError(str(source), f"Failed to restore files: {exc}") from exc

        # Lockfiles may have changed, so dependencies are reinstalled.
        outcome = await self._installer.install()
        if not outcome.success:
            log.critical("rollback_reinstall_failed", path=str(source))
            raise RollbackError(
                str(source), f"Dependency reinstall failed: {outcome.output[:500]}"
            )

        log.info("rollback_completed", path=str(source))
        return True

    def _remove_added_files(self, source: Path) -> None:
        """Delete allow-listed files that did not exist when *source* was taken.

        Backups without a readable file list are left alone.
        """
        metadata = self._read_metadata(source) or {}
        recorded = metadata.get("files")
        if not isinstance(recorded, list):
            return
        for rel in self._files:
            target = self._root / rel
            if rel not in recorded and target.is_file():
                target.unlink()
                log.info("rollback_removed_file", file=rel)

    # ------------------------------------------------------------------
    # List / prune
    # ------------------------------------------------------------------

    def list_backups(self) -> list[Backup]:
        """Return all backups, newest first."""
        if not self._backup_dir.is_dir():
            return []

        backups: list[Backup] = []
        for entry in self._backup_dir.iterdir():
            if not entry.is_dir() or not entry.name.startswith(BACKUP_DIR_PREFIX):
                continue
            metadata = self._read_metadata(entry)
            backups.append(
                Backup(
                    path=str(entry),
                    version=str((metadata or {}).get("version", _UNKNOWN)),
                    timestamp=str((metadata or {}).get("timestamp", _UNKNOWN)),
                    metadata=metadata,
                )
            )

        oldest = datetime.min.replace(tzinfo=UTC)
        backups.sort(key=lambda b: parse_iso(b.timestamp) or oldest, reverse=True)
        return backups

    def clean_old_backups(self, keep_count: int = DEFAULT_BACKUP_RETENTION) -> int:
        """Delete every backup beyond the newest *keep_count*.

        Returns the number of backups deleted. A directory that cannot be
        removed is logged and skipped.
        """
        if keep_count < 1:
            raise ValidationError(f"keep_count must be >= 1, got {keep_count}")

        deleted = 0
        for backup in self.list_backups()[keep_count:]:
            try:
                shutil.rmtree(backup.path)
                deleted += 1
            except OSError as exc:
                log.error("backup_delete_failed", path=backup.path, error=str(exc))

        if deleted:
            log.info("backups_pruned", deleted=deleted, kept=keep_count)
        return deleted

    @staticmethod
    def _read_metadata(path: Path) -> dict[str, Any] | None:
        meta_path = path / BACKUP_METADATA_FILE
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            log.warning("backup_metadata_unreadable", path=str(meta_path))
            return None
        return data if isinstance(data, dict) else None
