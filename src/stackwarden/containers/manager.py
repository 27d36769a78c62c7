"""Container lifecycle manager: refreshes managed containers from new images.

Two update paths are offered:

- per container: pull → stop → remove → create with the same runtime
  configuration → start. There is no automatic re-creation of the old
  container on failure; ``revert_container`` can rebuild it from the
  recorded snapshot on request.
- per stack: ``docker compose pull`` then ``up -d --force-recreate
  --remove-orphans``, which lets compose apply its own dependency order.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any

from docker.errors import DockerException
from docker.models.containers import Container

from stackwarden.config import Settings
from stackwarden.constants import BYTES_PER_MB, STACK_PROGRESS_NAME
from stackwarden.containers.models import (
    BatchUpdateResult,
    ContainerSnapshot,
    ContainerUpdateInfo,
    ContainerUpdateOutcome,
    ManagedContainer,
    PruneResult,
    RestartResult,
    StackUpdateResult,
)
from stackwarden.containers.progress import (
    ProgressChannel,
    ProgressObserver,
    ProgressStatus,
    UpdateProgress,
)
from stackwarden.errors import StageError
from stackwarden.logging import bind_update_run, get_logger
from stackwarden.runtime import DockerRuntime
from stackwarden.shell import run_command
from stackwarden.utils import parse_iso

log = get_logger("stackwarden.containers.manager")

_RUNTIME_ERRORS = (DockerException, TimeoutError, OSError)


class ContainerLifecycleManager:
    """Updates managed containers individually or as a compose stack."""

    def __init__(
        self,
        settings: Settings,
        runtime: DockerRuntime,
        progress: ProgressChannel | None = None,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._root = Path(settings.root_dir)
        self.progress = progress or ProgressChannel()
        self._snapshots: dict[str, ContainerSnapshot] = {}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def get_managed_containers(self) -> list[ManagedContainer]:
        """List containers carrying the managed label or the legacy name prefix.

        The label is the primary marker; the name prefix is kept for
        containers created before labels were applied.
        """
        try:
            containers = await self._runtime.list_containers(all=True)
        except _RUNTIME_ERRORS as exc:
            log.error("containers_list_failed", error=str(exc))
            return []

        label = self._settings.managed_label
        prefix = self._settings.legacy_name_prefix
        managed: list[ManagedContainer] = []
        for container in containers:
            attrs = container.attrs or {}
            config = attrs.get("Config") or {}
            labels = config.get("Labels") or {}
            name = container.name

            if labels.get(label) == "true":
                matched_by = "label"
            elif prefix and name.startswith(prefix):
                matched_by = "name"
            else:
                continue

            state = attrs.get("State") or {}
            managed.append(
                ManagedContainer(
                    id=container.id,
                    name=name,
                    image=config.get("Image") or str(attrs.get("Image", "")),
                    running=bool(state.get("Running")),
                    state=str(state.get("Status", "unknown")),
                    created=parse_iso(attrs.get("Created", "")),
                    labels=labels,
                    matched_by=matched_by,
                )
            )
        return managed

    async def check_for_image_updates(self) -> list[ContainerUpdateInfo]:
        """Compare each managed container's local image with the registry.

        A container whose image cannot be inspected or resolved is reported
        with ``update_available=False`` and the scan continues.
        """
        results: list[ContainerUpdateInfo] = []
        for managed in await self.get_managed_containers():
            info = ContainerUpdateInfo(
                name=managed.name,
                current_image=managed.image,
                latest_image=managed.image,
                update_available=False,
                running=managed.running,
                created=managed.created,
            )
            try:
                local = await self._runtime.inspect_image(managed.image)
                local_digests = [d.split("@", 1)[-1] for d in local.get("RepoDigests") or []]
                remote = await self._runtime.registry_digest(managed.image)
                info.local_digest = local_digests[0] if local_digests else local.get("Id")
                info.remote_digest = remote
                info.update_available = remote not in local_digests
            except _RUNTIME_ERRORS as exc:
                info.error = str(exc)
                log.warning("image_update_check_failed", container=managed.name, error=str(exc))
            results.append(info)
        return results

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def pull_image(self, image: str, on_progress: ProgressObserver | None = None) -> bool:
        """Pull *image*, streaming progress. Returns False instead of raising."""
        with self._observe(on_progress):
            return await self._pull(image, subject=image)

    async def _pull(self, image: str, subject: str) -> bool:
        def forward(event: dict[str, Any]) -> None:
            self.progress.publish(_pull_event_to_progress(subject, event))

        try:
            await self._runtime.pull(image, on_event=forward, timeout=self._settings.pull_timeout)
        except Exception as exc:
            log.warning("image_pull_failed", image=image, error=str(exc))
            return False
        log.info("image_pulled", image=image)
        return True

    async def prune_images(self) -> PruneResult:
        """Remove dangling images only and report the space reclaimed in MB."""
        try:
            report = await self._runtime.prune_dangling_images()
        except _RUNTIME_ERRORS as exc:
            log.error("image_prune_failed", error=str(exc))
            return PruneResult(success=False)

        reclaimed = int(report.get("SpaceReclaimed") or 0)
        deleted = report.get("ImagesDeleted") or []
        log.info("images_pruned", reclaimed_bytes=reclaimed, deleted=len(deleted))
        return PruneResult(
            success=True,
            space_reclaimed_mb=round(reclaimed / BYTES_PER_MB),
            images_deleted=len(deleted),
        )

    # ------------------------------------------------------------------
    # Per-container updates
    # ------------------------------------------------------------------

    async def update_container(
        self, name: str, on_progress: ProgressObserver | None = None
    ) -> ContainerUpdateOutcome:
        """Recreate *name* from the latest version of its image.

        Exactly one terminal progress event (completed or failed) is
        published per call.
        """
        with self._observe(on_progress):
            return await self._update_container(name)

    async def update_containers(
        self, names: list[str], on_progress: ProgressObserver | None = None
    ) -> BatchUpdateResult:
        """Update *names* one after another; a failure does not stop the batch."""
        result = BatchUpdateResult()
        with self._observe(on_progress), bind_update_run(containers=len(names)):
            for name in names:
                outcome = await self._update_container(name)
                result.updates.append(outcome)
                if not outcome.success:
                    result.success = False
                    result.errors.append(f"{name}: {outcome.error}")
        if not result.success:
            log.warning("container_batch_partial_failure", errors=result.errors)
        return result

    async def revert_container(
        self, name: str, on_progress: ProgressObserver | None = None
    ) -> ContainerUpdateOutcome:
        """Best-effort rebuild of *name* from its pre-update snapshot.

        Only possible after ``update_container`` ran for *name* in this
        process and while the previous image still exists locally.
        """
        with self._observe(on_progress):
            outcome = ContainerUpdateOutcome(container=name)
            try:
                snapshot = self._snapshots.get(name)
                if snapshot is None:
                    raise StageError("lookup", f"No snapshot recorded for {name}")
                outcome.previous_image = snapshot.image_id

                existing = await self._step("lookup", self._runtime.find_container(name))
                if existing is not None:
                    await self._stop_and_remove(name, existing)
                await self._create_and_start(name, snapshot.image_id, snapshot)
                outcome.new_image = snapshot.image_id
                outcome.success = True
            except StageError as exc:
                outcome.error = str(exc)
                log.error("container_revert_failed", container=name, stage=exc.stage)
            finally:
                self._finish(name, outcome, "Revert completed")
            return outcome

    async def _update_container(self, name: str) -> ContainerUpdateOutcome:
        outcome = ContainerUpdateOutcome(container=name)
        try:
            container = await self._step("lookup", self._runtime.find_container(name))
            if container is None:
                raise StageError("lookup", f"Container not found: {name}")

            attrs = await self._step("inspect", self._runtime.inspect_container(container))
            config = attrs.get("Config") or {}
            image = str(config.get("Image", ""))
            snapshot = ContainerSnapshot(
                name=name,
                image=image,
                image_id=str(attrs.get("Image", "")),
                config=config,
                host_config=attrs.get("HostConfig") or {},
                running=bool((attrs.get("State") or {}).get("Running")),
            )
            self._snapshots[name] = snapshot
            outcome.previous_image = snapshot.image_id

            self._emit(name, ProgressStatus.PULLING, f"Pulling latest image: {image}")
            if not await self._pull(image, subject=name):
                raise StageError("pull", f"Failed to pull image {image}")

            await self._stop_and_remove(name, container, running=snapshot.running)
            await self._create_and_start(name, image, snapshot)

            try:
                outcome.new_image = str((await self._runtime.inspect_image(image)).get("Id"))
            except _RUNTIME_ERRORS:
                outcome.new_image = image
            outcome.success = True
            log.info("container_updated", container=name, image=image)
        except StageError as exc:
            outcome.error = str(exc)
            log.error("container_update_failed", container=name, stage=exc.stage, error=str(exc))
        finally:
            self._finish(name, outcome, "Update completed")
        return outcome

    async def _stop_and_remove(
        self, name: str, container: Container, running: bool | None = None
    ) -> None:
        if running is None:
            attrs = await self._step("inspect", self._runtime.inspect_container(container))
            running = bool((attrs.get("State") or {}).get("Running"))
        if running:
            self._emit(name, ProgressStatus.STOPPING, "Stopping container")
            await self._step(
                "stop", self._runtime.stop(container, grace_seconds=self._settings.stop_timeout)
            )
        self._emit(name, ProgressStatus.REMOVING, "Removing old container")
        await self._step("remove", self._runtime.remove(container))

    async def _create_and_start(self, name: str, image: str, snapshot: ContainerSnapshot) -> None:
        self._emit(name, ProgressStatus.CREATING, "Creating new container")
        new_id = await self._step(
            "create", self._runtime.create(**_creation_params(name, image, snapshot))
        )
        self._emit(name, ProgressStatus.STARTING, "Starting new container")
        await self._step("start", self._runtime.start(new_id))

    # ------------------------------------------------------------------
    # Stack updates
    # ------------------------------------------------------------------

    async def update_stack(
        self, compose_file: str | None = None, on_progress: ProgressObserver | None = None
    ) -> StackUpdateResult:
        """Pull every image of the stack, then force-recreate it with orphan removal."""
        compose_path = Path(compose_file or self._settings.compose_file)
        if not compose_path.is_absolute():
            compose_path = self._root / compose_path

        with self._observe(on_progress):
            if not compose_path.is_file():
                message = f"Compose file not found: {compose_path}"
                self._emit(STACK_PROGRESS_NAME, ProgressStatus.FAILED, message)
                return StackUpdateResult(success=False, errors=[message])

            compose = f"docker compose -f {shlex.quote(str(compose_path))}"
            self._emit(STACK_PROGRESS_NAME, ProgressStatus.PULLING, "Pulling latest images")
            pulled = await run_command(
                f"{compose} pull", cwd=str(self._root), timeout=self._settings.stack_pull_timeout
            )
            if not pulled.success:
                return self._stack_failed("Image pull failed", pulled.output)

            self._emit(STACK_PROGRESS_NAME, ProgressStatus.CREATING, "Recreating services")
            recreated = await run_command(
                f"{compose} up -d --force-recreate --remove-orphans",
                cwd=str(self._root),
                timeout=self._settings.stack_up_timeout,
            )
            if not recreated.success:
                return self._stack_failed("Stack recreate failed", recreated.output)

            self._emit(STACK_PROGRESS_NAME, ProgressStatus.COMPLETED, "Stack updated")
            log.info("stack_updated", compose_file=str(compose_path))
            return StackUpdateResult(
                success=True, output="\n".join(filter(None, [pulled.output, recreated.output]))
            )

    def _stack_failed(self, reason: str, output: str) -> StackUpdateResult:
        message = f"{reason}: {output[:500]}" if output else reason
        self._emit(STACK_PROGRESS_NAME, ProgressStatus.FAILED, message)
        log.error("stack_update_failed", reason=reason)
        return StackUpdateResult(success=False, output=output, errors=[message])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def restart_managed_containers(self) -> RestartResult:
        """Restart every managed container in place."""
        result = RestartResult(success=False)
        for managed in await self.get_managed_containers():
            try:
                container = await self._runtime.get_container(managed.id)
                await self._runtime.restart(container, grace_seconds=self._settings.stop_timeout)
                result.restarted.append(managed.name)
            except _RUNTIME_ERRORS as exc:
                result.errors.append(f"{managed.name}: {exc}")
                log.warning("container_restart_failed", container=managed.name, error=str(exc))
        result.success = bool(result.restarted) and not result.errors
        return result

    async def system_info(self) -> dict[str, Any] | None:
        try:
            return await self._runtime.info()
        except _RUNTIME_ERRORS as exc:
            log.warning("runtime_info_failed", error=str(exc))
            return None

    @staticmethod
    def is_running_in_docker() -> bool:
        if Path("/.dockerenv").exists():
            return True
        try:
            return "docker" in Path("/proc/self/cgroup").read_text(encoding="utf-8")
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _observe(self, on_progress: ProgressObserver | None) -> Iterator[None]:
        scope = self.progress.subscribe(on_progress) if on_progress else nullcontext()
        with scope:
            yield

    def _emit(self, container: str, status: ProgressStatus, message: str) -> None:
        self.progress.publish(UpdateProgress(container=container, status=status, message=message))

    def _finish(self, name: str, outcome: ContainerUpdateOutcome, done_message: str) -> None:
        if outcome.success:
            self._emit(name, ProgressStatus.COMPLETED, done_message)
        else:
            self._emit(name, ProgressStatus.FAILED, outcome.error or "Update aborted")

    @staticmethod
    async def _step(stage: str, awaitable: Any) -> Any:
        """Await a runtime call, tagging any runtime failure with *stage*."""
        try:
            return await awaitable
        except _RUNTIME_ERRORS as exc:
            raise StageError(stage, f"{stage.capitalize()} failed: {exc}") from exc


def _creation_params(name: str, image: str, snapshot: ContainerSnapshot) -> dict[str, Any]:
    """Create-container arguments that reproduce *snapshot* with a new image."""
    config = snapshot.config
    exposed = config.get("ExposedPorts") or {}
    ports = []
    for key in exposed:
        port, _, proto = str(key).partition("/")
        ports.append((port, proto or "tcp"))
    return {
        "image": image,
        "name": name,
        "environment": config.get("Env"),
        "command": config.get("Cmd"),
        "entrypoint": config.get("Entrypoint"),
        "ports": ports or None,
        "host_config": snapshot.host_config,
        "labels": config.get("Labels"),
        "working_dir": config.get("WorkingDir") or None,
        "user": config.get("User") or None,
    }


def _pull_event_to_progress(subject: str, event: dict[str, Any]) -> UpdateProgress:
    detail = event.get("progressDetail") or {}
    current, total = detail.get("current"), detail.get("total")
    percent = round(current / total * 100, 1) if current and total else None
    layer = event.get("id")
    status = str(event.get("status", ""))
    return UpdateProgress(
        container=subject,
        status=ProgressStatus.PULLING,
        progress=percent,
        message=f"{layer}: {status}" if layer else status,
    )
