"""Error taxonomy for update and container lifecycle operations.

Public orchestration entry points convert these into structured result
objects; lower-level components (version parsing, backups) raise them.
"""

from __future__ import annotations


class UpdaterError(Exception):
    """Base class for all Stackwarden errors."""


class ValidationError(UpdaterError, ValueError):
    """Malformed input, such as a bad version string or option."""


class InvalidVersion(ValidationError):
    """A string that is not ``MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]``."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid version string: {value!r}")
        self.value = value


class PreconditionError(UpdaterError):
    """The pre-update health check failed; nothing was touched."""

    def __init__(self, failed_checks: list[str]) -> None:
        super().__init__(
            "Pre-update health check failed: " + ", ".join(failed_checks or ["unknown"])
        )
        self.failed_checks = list(failed_checks)


class StageError(UpdaterError):
    """A named stage (fetch, install, migrate, build, start, ...) failed."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message

    def __str__(self) -> str:
        return self.message


class BackupError(StageError):
    """Creating a backup snapshot failed."""

    def __init__(self, message: str) -> None:
        super().__init__("backup", message)


class RollbackError(UpdaterError):
    """Restoring a backup failed; the installation may be inconsistent."""

    def __init__(self, backup_path: str, message: str) -> None:
        super().__init__(f"{message} (backup: {backup_path})")
        self.backup_path = backup_path
        self.message = message


class PartialFailure(UpdaterError):
    """Some items of a batch operation failed while others may have succeeded."""

    def __init__(self, failures: dict[str, str], succeeded: list[str] | None = None) -> None:
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} item(s) failed: {names}")
        self.failures = dict(failures)
        self.succeeded = list(succeeded or [])
