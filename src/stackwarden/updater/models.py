"""Data models for the self-update pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stackwarden.utils import utc_now_iso


class UpdateState(Enum):
    """States of the update state machine."""

    IDLE = "idle"
    PRE_HEALTH_CHECK = "pre_health_check"
    BACKING_UP = "backing_up"
    FETCHING = "fetching"
    INSTALLING_DEPS = "installing_deps"
    MIGRATING = "migrating"
    BUILDING = "building"
    POST_HEALTH_CHECK = "post_health_check"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateState.SUCCEEDED, UpdateState.ROLLED_BACK, UpdateState.FAILED)


@dataclass
class UpdateOptions:
    """Caller options for one update run."""

    branch: str | None = None
    skip_backup: bool = False
    skip_migrations: bool = False
    skip_build: bool = False


@dataclass
class StepOutcome:
    """Result of one external collaborator call (fetch, install, migrate, build)."""

    success: bool
    output: str = ""
    changed: bool | None = None  # only set by the fetch step


@dataclass
class UpdateInfo:
    """Comparison of the installed version against the latest release."""

    available: bool
    current_version: str
    latest_version: str
    breaking: bool = False
    changelog: str | None = None
    release_date: str | None = None
    download_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "breaking": self.breaking,
            "changelog": (self.changelog or "")[:500] or None,
            "release_date": self.release_date,
            "download_url": self.download_url,
        }


@dataclass
class Backup:
    """A snapshot of critical configuration files on disk."""

    path: str
    version: str
    timestamp: str
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "version": self.version,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class UpdateResult:
    """Append-only audit of one update attempt."""

    success: bool
    previous_version: str
    new_version: str = ""
    changes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    rollback_available: bool = False
    rolled_back: bool = False
    backup_path: str | None = None
    state: UpdateState = UpdateState.IDLE
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    duration_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous_version": self.previous_version,
            "new_version": self.new_version,
            "changes": self.changes,
            "errors": self.errors,
            "rollback_available": self.rollback_available,
            "rolled_back": self.rolled_back,
            "backup_path": self.backup_path,
            "state": self.state.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }
