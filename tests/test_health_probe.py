"""Tests for stackwarden.health.probe: concurrent liveness probes."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from stackwarden.config import Settings
from stackwarden.health.probe import HealthCheck, HealthChecks, HealthProbe

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides) -> Settings:
    defaults = {"_env_file": None, "health_timeout": 1.0}
    defaults.update(overrides)
    return Settings(**defaults)


def _make_runtime(fail: bool = False) -> MagicMock:
    runtime = MagicMock()
    if fail:
        runtime.list_containers = AsyncMock(side_effect=OSError("socket missing"))
    else:
        runtime.list_containers = AsyncMock(return_value=[])
    return runtime


def _mock_http_client(status_code: int = 200, exc: Exception | None = None) -> AsyncMock:
    mock_client = AsyncMock()
    if exc is not None:
        mock_client.get.side_effect = exc
    else:
        resp = MagicMock()
        resp.status_code = status_code
        mock_client.get.return_value = resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


def _mock_pg_conn(value: int = 1, exc: Exception | None = None) -> AsyncMock:
    conn = AsyncMock()
    if exc is not None:
        conn.fetchval.side_effect = exc
    else:
        conn.fetchval.return_value = value
    return conn


def _mock_redis(ok: bool = True, exc: Exception | None = None) -> AsyncMock:
    client = AsyncMock()
    if exc is not None:
        client.ping.side_effect = exc
    else:
        client.ping.return_value = ok
    return client


class _Patched:
    """Patches the three network libraries used by the probe."""

    def __init__(self, http=None, conn=None, redis=None, connect_exc=None):
        self.http = http or _mock_http_client()
        self.conn = conn or _mock_pg_conn()
        self.redis = redis or _mock_redis()
        connect = AsyncMock(return_value=self.conn)
        if connect_exc is not None:
            connect.side_effect = connect_exc
        self._patches = [
            patch("stackwarden.health.probe.httpx.AsyncClient", return_value=self.http),
            patch("stackwarden.health.probe.asyncpg.connect", connect),
            patch("stackwarden.health.probe.aioredis.from_url", return_value=self.redis),
        ]

    def __enter__(self):
        for p in self._patches:
            p.start()
        return self

    def __exit__(self, *exc_info):
        for p in reversed(self._patches):
            p.stop()


# ---------------------------------------------------------------------------
# TestHealthProbe
# ---------------------------------------------------------------------------


class TestHealthProbe:
    """Tests for HealthProbe.check()."""

    async def test_all_healthy(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        with _Patched():
            result = await probe.check()

        assert result.healthy is True
        assert result.errors == []
        assert result.checks == HealthChecks(True, True, True, True)

    async def test_api_probe_uses_health_url(self) -> None:
        probe = HealthProbe(_make_settings(api_url="http://svc:8080/"), _make_runtime())
        with _Patched() as mocks:
            await probe.check()

        mocks.http.get.assert_awaited_once_with("http://svc:8080/health")

    async def test_api_non_200_is_unhealthy(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        with _Patched(http=_mock_http_client(status_code=503)):
            result = await probe.check()

        assert result.healthy is False
        assert result.errors == ["api"]
        assert result.checks.database is True

    async def test_api_connection_error(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        with _Patched(http=_mock_http_client(exc=httpx.ConnectError("refused"))):
            result = await probe.check()

        assert result.checks.api is False
        assert result.checks.cache is True

    async def test_database_failure_does_not_stop_other_probes(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        with _Patched(connect_exc=OSError("connection refused")):
            result = await probe.check()

        assert result.errors == ["database"]
        assert result.checks.api is True
        assert result.checks.cache is True
        assert result.checks.container_runtime is True

    async def test_database_connection_closed_on_query_error(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        conn = _mock_pg_conn(exc=RuntimeError("query failed"))
        with _Patched(conn=conn):
            result = await probe.check()

        assert result.checks.database is False
        conn.close.assert_awaited_once()

    async def test_database_wrong_answer_is_unhealthy(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        with _Patched(conn=_mock_pg_conn(value=0)):
            result = await probe.check()

        assert result.checks.database is False

    async def test_cache_client_closed_on_ping_error(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime())
        redis = _mock_redis(exc=ConnectionError("no redis"))
        with _Patched(redis=redis):
            result = await probe.check()

        assert result.errors == ["cache"]
        redis.aclose.assert_awaited_once()

    async def test_container_runtime_failure(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime(fail=True))
        with _Patched():
            result = await probe.check()

        assert result.errors == ["container_runtime"]

    async def test_multiple_failures_listed_in_probe_order(self) -> None:
        probe = HealthProbe(_make_settings(), _make_runtime(fail=True))
        with _Patched(http=_mock_http_client(status_code=500), redis=_mock_redis(ok=False)):
            result = await probe.check()

        assert result.errors == ["api", "cache", "container_runtime"]

    async def test_slow_probe_times_out(self) -> None:
        probe = HealthProbe(_make_settings(health_timeout=0.05), _make_runtime())

        async def _hang() -> bool:
            await asyncio.sleep(5)
            return True

        with _Patched(), patch.object(probe, "_check_api", _hang):
            result = await probe.check()

        assert result.checks.api is False
        assert result.checks.database is True


# ---------------------------------------------------------------------------
# TestHealthCheckModel
# ---------------------------------------------------------------------------


class TestHealthCheckModel:
    def test_to_dict(self) -> None:
        check = HealthCheck(
            healthy=False,
            checks=HealthChecks(api=True, database=False, cache=True, container_runtime=True),
            errors=["database"],
            checked_at="2026-01-01T00:00:00+00:00",
        )
        assert check.to_dict() == {
            "healthy": False,
            "checks": {
                "api": True,
                "database": False,
                "cache": True,
                "container_runtime": True,
            },
            "errors": ["database"],
            "checked_at": "2026-01-01T00:00:00+00:00",
        }

    @pytest.mark.parametrize("field", ["api", "database", "cache", "container_runtime"])
    def test_checks_default_to_failed(self, field: str) -> None:
        assert getattr(HealthChecks(), field) is False
