"""Tests for stackwarden.containers.manager: container and stack updates."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound

from stackwarden.config import Settings
from stackwarden.containers.manager import ContainerLifecycleManager
from stackwarden.containers.progress import ProgressStatus, UpdateProgress
from stackwarden.errors import PartialFailure
from stackwarden.runtime import DockerRuntime
from stackwarden.shell import CommandOutput

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides) -> Settings:
    defaults = {"_env_file": None, "root_dir": tmp_path, "stop_timeout": 7}
    defaults.update(overrides)
    return Settings(**defaults)


def _attrs(
    name: str,
    image: str = "ghcr.io/acme/api:latest",
    image_id: str = "sha256:old",
    labels: dict | None = None,
    running: bool = True,
    entrypoint: list | None = None,
) -> dict:
    return {
        "Name": f"/{name}",
        "Image": image_id,
        "Created": "2026-09-01T12:00:00.123456789Z",
        "State": {"Running": running, "Status": "running" if running else "exited"},
        "Config": {
            "Image": image,
            "Env": ["NODE_ENV=production"],
            "Cmd": ["node", "server.js"],
            "Entrypoint": entrypoint,
            "ExposedPorts": {"4000/tcp": {}, "9229/udp": {}},
            "Labels": labels if labels is not None else {"com.stackwarden.managed": "true"},
            "WorkingDir": "/app",
            "User": "",
        },
        "HostConfig": {"RestartPolicy": {"Name": "unless-stopped"}, "PortBindings": {}},
    }


def _container(name: str, **attr_overrides) -> MagicMock:
    container = MagicMock()
    container.name = name
    container.id = f"{name}-id-0123456789abcdef"
    container.attrs = _attrs(name, **attr_overrides)
    return container


def _make_runtime(*containers: MagicMock) -> MagicMock:
    by_name = {c.name: c for c in containers}
    by_id = {c.id: c for c in containers}
    runtime = MagicMock()
    runtime.list_containers = AsyncMock(return_value=list(containers))
    runtime.find_container = AsyncMock(side_effect=lambda name: by_name.get(name))
    runtime.get_container = AsyncMock(side_effect=lambda cid: by_id[cid])
    runtime.inspect_container = AsyncMock(side_effect=lambda c: c.attrs)
    runtime.inspect_image = AsyncMock(return_value={"Id": "sha256:new", "RepoDigests": []})
    runtime.registry_digest = AsyncMock(return_value="sha256:remote")
    runtime.pull = AsyncMock(return_value=None)
    runtime.stop = AsyncMock()
    runtime.remove = AsyncMock()
    runtime.create = AsyncMock(return_value="new-container-id")
    runtime.start = AsyncMock()
    runtime.restart = AsyncMock()
    runtime.prune_dangling_images = AsyncMock()
    runtime.info = AsyncMock(return_value={"ServerVersion": "27.0.1"})
    return runtime


def _make_manager(tmp_path: Path, *containers: MagicMock, **overrides):
    runtime = _make_runtime(*containers)
    manager = ContainerLifecycleManager(_make_settings(tmp_path, **overrides), runtime)
    events: list[UpdateProgress] = []
    manager.progress.subscribe(events.append)
    return manager, runtime, events


def _statuses(events: list[UpdateProgress], container: str) -> list[ProgressStatus]:
    return [e.status for e in events if e.container == container]


def _terminal(events: list[UpdateProgress], container: str) -> list[UpdateProgress]:
    return [e for e in events if e.container == container and e.status.is_terminal]


# ---------------------------------------------------------------------------
# TestGetManagedContainers
# ---------------------------------------------------------------------------


class TestGetManagedContainers:
    """Tests for label and legacy-name discovery."""

    async def test_label_and_legacy_name(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(
            tmp_path,
            _container("api"),
            _container("stackwarden-worker", labels={}),
            _container("postgres", labels={"com.stackwarden.managed": "false"}),
            _container("unrelated", labels={}),
        )

        managed = await manager.get_managed_containers()

        assert [(m.name, m.matched_by) for m in managed] == [
            ("api", "label"),
            ("stackwarden-worker", "name"),
        ]

    async def test_label_takes_precedence(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _container("stackwarden-api"))
        managed = await manager.get_managed_containers()
        assert managed[0].matched_by == "label"

    async def test_fields(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _container("api", running=False))
        [m] = await manager.get_managed_containers()

        assert m.image == "ghcr.io/acme/api:latest"
        assert m.running is False
        assert m.state == "exited"
        assert m.to_dict()["id"] == "api-id-01234"

    async def test_listing_failure_returns_empty(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        runtime.list_containers.side_effect = DockerException("daemon down")
        assert await manager.get_managed_containers() == []


# ---------------------------------------------------------------------------
# TestCheckForImageUpdates
# ---------------------------------------------------------------------------


class TestCheckForImageUpdates:
    async def test_digest_comparison(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(
            tmp_path,
            _container("api", image="acme/api:1"),
            _container("web", image="acme/web:1"),
        )

        async def _inspect(image: str) -> dict:
            digest = "sha256:remote" if image == "acme/api:1" else "sha256:stale"
            return {"Id": "sha256:local", "RepoDigests": [f"{image.split(':')[0]}@{digest}"]}

        runtime.inspect_image.side_effect = _inspect

        results = {r.name: r for r in await manager.check_for_image_updates()}

        assert results["api"].update_available is False
        assert results["web"].update_available is True
        assert results["web"].local_digest == "sha256:stale"
        assert results["web"].remote_digest == "sha256:remote"

    async def test_one_failure_does_not_abort_scan(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(
            tmp_path,
            _container("api", image="acme/api:1"),
            _container("web", image="acme/web:1"),
        )
        runtime.registry_digest.side_effect = [NotFound("no such manifest"), "sha256:remote"]

        results = await manager.check_for_image_updates()

        assert len(results) == 2
        assert results[0].update_available is False
        assert "no such manifest" in results[0].error
        assert results[1].error is None
        assert results[1].update_available is True


# ---------------------------------------------------------------------------
# TestUpdateContainer
# ---------------------------------------------------------------------------


class TestUpdateContainer:
    """Tests for per-container updates and their progress events."""

    async def test_success_sequence(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("api"))

        outcome = await manager.update_container("api")

        assert outcome.success is True
        assert outcome.previous_image == "sha256:old"
        assert outcome.new_image == "sha256:new"
        assert _statuses(events, "api") == [
            ProgressStatus.PULLING,
            ProgressStatus.STOPPING,
            ProgressStatus.REMOVING,
            ProgressStatus.CREATING,
            ProgressStatus.STARTING,
            ProgressStatus.COMPLETED,
        ]
        runtime.stop.assert_awaited_once()
        assert runtime.stop.await_args.kwargs["grace_seconds"] == 7
        runtime.start.assert_awaited_once_with("new-container-id")

    async def test_recreates_with_same_configuration(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path, _container("api"))

        await manager.update_container("api")

        params = runtime.create.await_args.kwargs
        assert params["name"] == "api"
        assert params["image"] == "ghcr.io/acme/api:latest"
        assert params["environment"] == ["NODE_ENV=production"]
        assert params["command"] == ["node", "server.js"]
        assert params["entrypoint"] is None
        assert params["ports"] == [("4000", "tcp"), ("9229", "udp")]
        assert params["host_config"] == {
            "RestartPolicy": {"Name": "unless-stopped"},
            "PortBindings": {},
        }
        assert params["labels"] == {"com.stackwarden.managed": "true"}
        assert params["working_dir"] == "/app"
        assert params["user"] is None

    async def test_overridden_entrypoint_kept(self, tmp_path: Path) -> None:
        container = _container("api", entrypoint=["/docker-entrypoint.sh"])
        manager, runtime, _ = _make_manager(tmp_path, container)

        await manager.update_container("api")

        assert runtime.create.await_args.kwargs["entrypoint"] == ["/docker-entrypoint.sh"]

    async def test_stopped_container_not_stopped_again(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("api", running=False))

        outcome = await manager.update_container("api")

        assert outcome.success is True
        runtime.stop.assert_not_awaited()
        assert ProgressStatus.STOPPING not in _statuses(events, "api")

    async def test_not_found(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path)

        outcome = await manager.update_container("ghost")

        assert outcome.success is False
        assert outcome.error == "Container not found: ghost"
        assert _statuses(events, "ghost") == [ProgressStatus.FAILED]
        runtime.pull.assert_not_awaited()

    async def test_pull_failure_leaves_container_alone(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("api"))
        runtime.pull.side_effect = APIError("manifest unknown")

        outcome = await manager.update_container("api")

        assert outcome.success is False
        assert outcome.error == "Failed to pull image ghcr.io/acme/api:latest"
        runtime.stop.assert_not_awaited()
        runtime.remove.assert_not_awaited()
        assert len(_terminal(events, "api")) == 1

    @pytest.mark.parametrize(
        ("method", "message"),
        [
            ("stop", "Stop failed: boom"),
            ("remove", "Remove failed: boom"),
            ("create", "Create failed: boom"),
            ("start", "Start failed: boom"),
        ],
    )
    async def test_stage_failure_emits_one_terminal_event(
        self, tmp_path: Path, method: str, message: str
    ) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("api"))
        getattr(runtime, method).side_effect = DockerException("boom")

        outcome = await manager.update_container("api")

        assert outcome.success is False
        assert outcome.error == message
        terminal = _terminal(events, "api")
        assert len(terminal) == 1
        assert terminal[0].status == ProgressStatus.FAILED
        assert terminal[0].message == message

    async def test_timeout_is_a_stage_failure(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path, _container("api"))
        runtime.stop.side_effect = TimeoutError()

        outcome = await manager.update_container("api")

        assert outcome.success is False
        assert outcome.error.startswith("Stop failed")

    async def test_pull_events_forwarded(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("api"))

        async def _pull(image, on_event=None, timeout=None):
            detail = {"current": 50, "total": 200}
            on_event({"status": "Downloading", "id": "abc", "progressDetail": detail})

        runtime.pull.side_effect = _pull

        await manager.update_container("api")

        layer_events = [e for e in events if e.progress is not None]
        assert layer_events == [
            UpdateProgress("api", ProgressStatus.PULLING, 25.0, "abc: Downloading")
        ]

    async def test_no_events_after_pull_timeout(self, tmp_path: Path) -> None:
        container = _container("api")
        client = MagicMock()
        client.containers.list.return_value = [container]
        reads_after_timeout: list[int] = []

        def _slow_stream():
            yield {"status": "Pulling fs layer", "id": "l1"}
            for i in range(5):
                time.sleep(0.05)
                reads_after_timeout.append(i)
                yield {"status": "Downloading", "id": "l1"}

        client.api.pull.side_effect = lambda *a, **kw: _slow_stream()
        manager = ContainerLifecycleManager(
            _make_settings(tmp_path, pull_timeout=0.02), DockerRuntime(client=client)
        )
        events: list[UpdateProgress] = []
        manager.progress.subscribe(events.append)

        outcome = await manager.update_container("api")
        await asyncio.sleep(0.4)

        assert outcome.success is False
        assert outcome.error == "Failed to pull image ghcr.io/acme/api:latest"
        assert events[-1].status == ProgressStatus.FAILED
        assert len(_terminal(events, "api")) == 1
        assert len(reads_after_timeout) < 5
        client.api.create_container.assert_not_called()

    async def test_call_scoped_observer(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _container("api"))
        seen: list[UpdateProgress] = []

        await manager.update_container("api", on_progress=seen.append)
        await manager.update_container("api")

        assert len(_terminal(seen, "api")) == 1

    async def test_failing_observer_does_not_break_update(self, tmp_path: Path) -> None:
        manager, _, events = _make_manager(tmp_path, _container("api"))

        def _explode(event: UpdateProgress) -> None:
            raise RuntimeError("observer bug")

        outcome = await manager.update_container("api", on_progress=_explode)

        assert outcome.success is True
        assert _statuses(events, "api")[-1] == ProgressStatus.COMPLETED


# ---------------------------------------------------------------------------
# TestUpdateContainers
# ---------------------------------------------------------------------------


class TestUpdateContainers:
    async def test_partial_failure_continues(self, tmp_path: Path) -> None:
        manager, runtime, events = _make_manager(tmp_path, _container("a"), _container("c"))

        result = await manager.update_containers(["a", "b", "c"])

        assert result.success is False
        assert [u.container for u in result.updates] == ["a", "b", "c"]
        assert [u.success for u in result.updates] == [True, False, True]
        assert result.errors == ["b: Container not found: b"]
        for name in ("a", "b", "c"):
            assert len(_terminal(events, name)) == 1

        with pytest.raises(PartialFailure) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.failures == {"b": "Container not found: b"}
        assert exc_info.value.succeeded == ["a", "c"]

    async def test_all_succeed(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path, _container("a"), _container("b"))

        result = await manager.update_containers(["a", "b"])

        assert result.success is True
        assert result.errors == []
        result.raise_for_failures()


# ---------------------------------------------------------------------------
# TestRevertContainer
# ---------------------------------------------------------------------------


class TestRevertContainer:
    async def test_revert_uses_previous_image(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path, _container("api"))
        await manager.update_container("api")
        runtime.create.reset_mock()

        outcome = await manager.revert_container("api")

        assert outcome.success is True
        assert runtime.create.await_args.kwargs["image"] == "sha256:old"

    async def test_revert_without_snapshot(self, tmp_path: Path) -> None:
        manager, _, events = _make_manager(tmp_path, _container("api"))

        outcome = await manager.revert_container("api")

        assert outcome.success is False
        assert outcome.error == "No snapshot recorded for api"
        assert _statuses(events, "api") == [ProgressStatus.FAILED]


# ---------------------------------------------------------------------------
# TestPullAndPrune
# ---------------------------------------------------------------------------


class TestPullImage:
    async def test_success(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        assert await manager.pull_image("redis:7") is True
        runtime.pull.assert_awaited_once()

    @pytest.mark.parametrize("exc", [APIError("denied"), TimeoutError(), RuntimeError("x")])
    async def test_failure_never_raises(self, tmp_path: Path, exc: Exception) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        runtime.pull.side_effect = exc
        assert await manager.pull_image("redis:7") is False


class TestPruneImages:
    async def test_reports_megabytes(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        runtime.prune_dangling_images.return_value = {
            "SpaceReclaimed": 3 * 1024 * 1024 + 1000,
            "ImagesDeleted": [{"Deleted": "sha256:a"}, {"Untagged": "old:1"}],
        }

        result = await manager.prune_images()

        assert result.success is True
        assert result.space_reclaimed_mb == 3
        assert result.images_deleted == 2

    async def test_nothing_pruned(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        runtime.prune_dangling_images.return_value = {"SpaceReclaimed": 0, "ImagesDeleted": None}

        result = await manager.prune_images()

        assert result.to_dict() == {
            "success": True,
            "space_reclaimed_mb": 0,
            "images_deleted": 0,
        }

    async def test_failure(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        runtime.prune_dangling_images.side_effect = APIError("conflict")
        assert (await manager.prune_images()).success is False


# ---------------------------------------------------------------------------
# TestUpdateStack
# ---------------------------------------------------------------------------


class TestUpdateStack:
    """Tests for compose-level pull and force-recreate."""

    def _compose(self, tmp_path: Path) -> Path:
        path = tmp_path / "docker" / "docker-compose.full.yml"
        path.parent.mkdir(parents=True)
        path.write_text("services: {}\n")
        return path

    async def test_missing_compose_file(self, tmp_path: Path) -> None:
        manager, _, events = _make_manager(tmp_path)
        run = AsyncMock()
        with patch("stackwarden.containers.manager.run_command", run):
            result = await manager.update_stack()

        assert result.success is False
        assert result.errors[0].startswith("Compose file not found")
        run.assert_not_awaited()
        assert _statuses(events, "compose-stack") == [ProgressStatus.FAILED]

    async def test_pull_then_force_recreate(self, tmp_path: Path) -> None:
        compose = self._compose(tmp_path)
        manager, _, events = _make_manager(tmp_path)
        run = AsyncMock(
            side_effect=[
                CommandOutput(success=True, stdout="pulled"),
                CommandOutput(success=True, stdout="recreated"),
            ]
        )
        with patch("stackwarden.containers.manager.run_command", run):
            result = await manager.update_stack()

        assert result.success is True
        assert result.output == "pulled\nrecreated"
        commands = [c.args[0] for c in run.await_args_list]
        assert commands == [
            f"docker compose -f {compose} pull",
            f"docker compose -f {compose} up -d --force-recreate --remove-orphans",
        ]
        assert _statuses(events, "compose-stack")[-1] == ProgressStatus.COMPLETED

    async def test_pull_failure_skips_recreate(self, tmp_path: Path) -> None:
        self._compose(tmp_path)
        manager, _, events = _make_manager(tmp_path)
        run = AsyncMock(return_value=CommandOutput(success=False, stderr="unauthorized"))
        with patch("stackwarden.containers.manager.run_command", run):
            result = await manager.update_stack()

        assert result.success is False
        assert result.errors == ["Image pull failed: unauthorized"]
        assert run.await_count == 1
        assert _statuses(events, "compose-stack")[-1] == ProgressStatus.FAILED

    async def test_explicit_absolute_compose_file(self, tmp_path: Path) -> None:
        other = tmp_path / "elsewhere.yml"
        other.write_text("services: {}\n")
        manager, _, _ = _make_manager(tmp_path)
        run = AsyncMock(return_value=CommandOutput(success=True))
        with patch("stackwarden.containers.manager.run_command", run):
            result = await manager.update_stack(str(other))

        assert result.success is True
        assert str(other) in run.await_args_list[0].args[0]


# ---------------------------------------------------------------------------
# TestMaintenance
# ---------------------------------------------------------------------------


class TestMaintenance:
    async def test_restart_managed(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(
            tmp_path, _container("api"), _container("other", labels={})
        )

        result = await manager.restart_managed_containers()

        assert result.success is True
        assert result.restarted == ["api"]
        runtime.restart.assert_awaited_once()

    async def test_restart_failure_recorded(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path, _container("api"))
        runtime.restart.side_effect = APIError("no")

        result = await manager.restart_managed_containers()

        assert result.success is False
        assert result.errors[0].startswith("api:")

    async def test_system_info(self, tmp_path: Path) -> None:
        manager, runtime, _ = _make_manager(tmp_path)
        assert await manager.system_info() == {"ServerVersion": "27.0.1"}
        runtime.info.side_effect = DockerException("down")
        assert await manager.system_info() is None
