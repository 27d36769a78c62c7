"""Liveness probes run before and after an update.

Four independent checks are run concurrently:

- api: the service's own ``/health`` endpoint (httpx)
- database: a ``SELECT 1`` round-trip (asyncpg)
- cache: a Redis ``PING`` (redis asyncio client)
- container_runtime: a container listing call (Docker SDK)

Each check has its own timeout and exception boundary, so one failure never
prevents the others from being evaluated. Connections opened for a probe are
always closed before the probe returns.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import asyncpg
import httpx
import redis.asyncio as aioredis

from stackwarden.config import Settings
from stackwarden.logging import get_logger
from stackwarden.utils import utc_now_iso

if TYPE_CHECKING:
    from stackwarden.runtime import DockerRuntime

log = get_logger("stackwarden.health.probe")


@dataclass
class HealthChecks:
    """Per-probe pass/fail flags."""

    api: bool = False
    database: bool = False
    cache: bool = False
    container_runtime: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "api": self.api,
            "database": self.database,
            "cache": self.cache,
            "container_runtime": self.container_runtime,
        }


@dataclass
class HealthCheck:
    """A point-in-time aggregate health verdict."""

    healthy: bool
    checks: HealthChecks = field(default_factory=HealthChecks)
    errors: list[str] = field(default_factory=list)
    checked_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": self.checks.to_dict(),
            "errors": self.errors,
            "checked_at": self.checked_at,
        }


class HealthProbe:
    """Aggregates the API, datastore, cache and container-runtime probes."""

    def __init__(self, settings: Settings, runtime: DockerRuntime) -> None:
        self._settings = settings
        self._runtime = runtime
        self._timeout = settings.health_timeout

    async def check(self) -> HealthCheck:
        """Run every probe and wait for all of them to settle."""
        probes: dict[str, Callable[[], Awaitable[bool]]] = {
            "api": self._check_api,
            "database": self._check_database,
            "cache": self._check_cache,
            "container_runtime": self._check_container_runtime,
        }
        outcomes = await asyncio.gather(
            *(self._run_probe(name, probe) for name, probe in probes.items())
        )

        checks = HealthChecks(**dict(zip(probes, outcomes, strict=True)))
        errors = [name for name, ok in zip(probes, outcomes, strict=True) if not ok]
        result = HealthCheck(healthy=not errors, checks=checks, errors=errors)

        if errors:
            log.warning("health_check_failed", failed=errors)
        else:
            log.debug("health_check_passed")
        return result

    async def _run_probe(self, name: str, probe: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), timeout=self._timeout))
        except TimeoutError:
            log.warning("health_probe_timeout", probe=name, timeout=self._timeout)
        except Exception as exc:
            log.warning("health_probe_error", probe=name, error=str(exc))
        return False

    async def _check_api(self) -> bool:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(self._settings.health_url)
        if resp.status_code != 200:
            log.debug("health_api_status", status=resp.status_code)
            return False
        return True

    async def _check_database(self) -> bool:
        conn = await asyncpg.connect(
            self._settings.database_url.get_secret_value(),
            timeout=self._timeout,
        )
        try:
            return await conn.fetchval("SELECT 1") == 1
        finally:
            await conn.close()

    async def _check_cache(self) -> bool:
        client = aioredis.from_url(
            self._settings.redis_url,
            socket_timeout=self._timeout,
            socket_connect_timeout=self._timeout,
        )
        try:
            return bool(await client.ping())
        finally:
            await client.aclose()

    async def _check_container_runtime(self) -> bool:
        await self._runtime.list_containers(all=False)
        return True
