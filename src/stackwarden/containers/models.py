"""Data models for container lifecycle operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stackwarden.errors import PartialFailure


@dataclass
class ManagedContainer:
    """A container recognised as part of this installation."""

    id: str
    name: str
    image: str
    running: bool
    matched_by: str  # "label" or "name"
    state: str = "unknown"
    created: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id[:12],
            "name": self.name,
            "image": self.image,
            "running": self.running,
            "state": self.state,
            "matched_by": self.matched_by,
            "created": self.created.isoformat() if self.created else None,
        }


@dataclass
class ContainerUpdateInfo:
    """Image freshness of one managed container."""

    name: str
    current_image: str
    latest_image: str
    update_available: bool
    running: bool
    created: datetime | None = None
    local_digest: str | None = None
    remote_digest: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "current_image": self.current_image,
            "latest_image": self.latest_image,
            "update_available": self.update_available,
            "running": self.running,
            "created": self.created.isoformat() if self.created else None,
            "local_digest": self.local_digest,
            "remote_digest": self.remote_digest,
            "error": self.error,
        }


@dataclass
class ContainerSnapshot:
    """Runtime configuration of a container captured before it was replaced."""

    name: str
    image: str
    image_id: str
    config: dict[str, Any]
    host_config: dict[str, Any]
    running: bool


@dataclass
class ContainerUpdateOutcome:
    """Result of updating (or reverting) one container."""

    container: str
    success: bool = False
    previous_image: str | None = None
    new_image: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "success": self.success,
            "previous_image": self.previous_image,
            "new_image": self.new_image,
            "error": self.error,
        }


@dataclass
class BatchUpdateResult:
    """Per-container results of a sequential batch update."""

    success: bool = True
    updates: list[ContainerUpdateOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def raise_for_failures(self) -> None:
        """Raise :class:`PartialFailure` if any container failed."""
        failures = {u.container: u.error or "unknown error" for u in self.updates if not u.success}
        if failures:
            succeeded = [u.container for u in self.updates if u.success]
            raise PartialFailure(failures, succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "updates": [u.to_dict() for u in self.updates],
            "errors": self.errors,
        }


@dataclass
class StackUpdateResult:
    """Result of a compose-level pull and force-recreate."""

    success: bool
    output: str = ""
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output, "errors": self.errors}


@dataclass
class PruneResult:
    """Space reclaimed by removing dangling images."""

    success: bool
    space_reclaimed_mb: int = 0
    images_deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "space_reclaimed_mb": self.space_reclaimed_mb,
            "images_deleted": self.images_deleted,
        }


@dataclass
class RestartResult:
    """Names of managed containers restarted in place."""

    success: bool
    restarted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "restarted": self.restarted, "errors": self.errors}
