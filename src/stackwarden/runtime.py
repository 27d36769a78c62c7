"""Async adapter over the Docker SDK.

The SDK is blocking, so every call, including building the client itself, is
pushed to a worker thread and bounded by an explicit timeout. A timed-out
call is reported as ``TimeoutError``; the underlying thread is left to finish
on its own, except for image pulls, which stop reading the stream.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any

import docker
from docker.models.containers import Container
from docker.utils import parse_repository_tag

from stackwarden.errors import StageError
from stackwarden.logging import get_logger

log = get_logger("stackwarden.runtime")


class DockerRuntime:
    """Thin async wrapper around ``docker.DockerClient``."""

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        base_url: str | None = None,
        timeout: float = 60,
    ) -> None:
        self._client = client
        self._base_url = base_url
        self._timeout = timeout
        self._client_lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """The SDK client, built on first use. Blocks; call from a worker thread."""
        with self._client_lock:
            if self._client is None:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url)
                else:
                    self._client = docker.from_env()
            return self._client

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout or self._timeout,
        )

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        return bool(await self._call(lambda: self.client.ping()))

    async def list_containers(self, all: bool = True) -> list[Container]:
        # Containers removed between the list and the per-container inspect
        # are skipped instead of failing the whole listing.
        return await self._call(
            lambda: self.client.containers.list(all=all, ignore_removed=True)
        )

    async def get_container(self, container_id: str) -> Container:
        return await self._call(lambda: self.client.containers.get(container_id))

    async def find_container(self, name: str) -> Container | None:
        """Return the container whose name is exactly *name*, if any."""
        wanted = name.lstrip("/")
        for container in await self.list_containers(all=True):
            if container.name == wanted:
                return container
        return None

    async def inspect_container(self, container: Container) -> dict[str, Any]:
        await self._call(container.reload)
        return dict(container.attrs)

    async def stop(self, container: Container, grace_seconds: int) -> None:
        # The daemon sends SIGKILL once the grace period runs out.
        await self._call(
            lambda: container.stop(timeout=grace_seconds),
            timeout=self._timeout + grace_seconds,
        )

    async def remove(self, container: Container) -> None:
        await self._call(container.remove)

    async def create(self, **params: Any) -> str:
        response = await self._call(lambda: self.client.api.create_container(**params))
        return str(response["Id"])

    async def start(self, container_id: str) -> None:
        await self._call(lambda: self.client.api.start(container_id))

    async def restart(self, container: Container, grace_seconds: int) -> None:
        await self._call(
            lambda: container.restart(timeout=grace_seconds),
            timeout=self._timeout + grace_seconds,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def inspect_image(self, image: str) -> dict[str, Any]:
        found = await self._call(lambda: self.client.images.get(image))
        return dict(found.attrs)

    async def registry_digest(self, image: str) -> str:
        """Resolve the digest the registry currently serves for *image*."""
        data = await self._call(lambda: self.client.images.get_registry_data(image))
        return str(data.id)

    async def pull(
        self,
        image: str,
        on_event: Callable[[dict[str, Any]], None] | None = None,
        timeout: float | None = None,
    ) -> None:
        """Pull *image*, forwarding each decoded stream event to *on_event*.

        Events are delivered on the event loop thread, and never after this
        coroutine has returned or raised. On timeout the worker thread stops
        reading the stream at the next event.

        Raises:
            StageError: if the registry reports an error in the stream.
            TimeoutError: if the pull does not finish within *timeout*.
        """
        loop = asyncio.get_running_loop()
        repository, tag = parse_repository_tag(image)
        finished = threading.Event()

        def _deliver(event: dict[str, Any]) -> None:
            if on_event is not None and not finished.is_set():
                on_event(event)

        def _pull() -> None:
            stream = self.client.api.pull(
                repository, tag=tag or "latest", stream=True, decode=True
            )
            for event in stream:
                if finished.is_set():
                    log.warning("image_pull_abandoned", image=image)
                    return
                if "error" in event:
                    raise StageError("pull", str(event["error"]))
                loop.call_soon_threadsafe(_deliver, event)

        try:
            await self._call(_pull, timeout=timeout)
        finally:
            finished.set()

    async def prune_dangling_images(self) -> dict[str, Any]:
        return await self._call(lambda: self.client.images.prune(filters={"dangling": True}))

    async def info(self) -> dict[str, Any]:
        return await self._call(lambda: self.client.info())
