"""Tests for webhook_deployer.health_checker: readiness probing."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from webhook_deployer.health_checker import HealthCheckConfig, check_service_health

URL = "http://127.0.0.1:3000/api/health"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_response(status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    return resp


def _mock_client(**get_kwargs: object) -> AsyncMock:
    client = AsyncMock()
    client.get = AsyncMock(**get_kwargs)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _fast(retries: int = 3) -> HealthCheckConfig:
    return HealthCheckConfig(retries=retries, delay_seconds=0, timeout_seconds=5)


# ---------------------------------------------------------------------------
# TestCheckServiceHealth
# ---------------------------------------------------------------------------


class TestCheckServiceHealth:
    """Tests for check_service_health()."""

    async def test_passes_on_200(self) -> None:
        client = _mock_client(return_value=_mock_response(200))

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_service_health(URL, _fast()) is True

        assert client.get.await_count == 1

    async def test_retries_until_200(self) -> None:
        client = _mock_client(side_effect=[_mock_response(503), _mock_response(200)])

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_service_health(URL, _fast(retries=5)) is True

        assert client.get.await_count == 2

    async def test_connection_refused_is_retried(self) -> None:
        client = _mock_client(side_effect=[httpx.ConnectError("refused"), _mock_response(200)])

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_service_health(URL, _fast()) is True

    async def test_gives_up_after_retries(self) -> None:
        client = _mock_client(side_effect=httpx.ConnectError("refused"))

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_service_health(URL, _fast(retries=2)) is False

        assert client.get.await_count == 2

    async def test_no_sleep_after_last_attempt(self) -> None:
        client = _mock_client(return_value=_mock_response(500))

        with (
            patch("httpx.AsyncClient", return_value=client),
            patch(
                "webhook_deployer.health_checker.asyncio.sleep", new_callable=AsyncMock
            ) as mock_sleep,
        ):
            result = await check_service_health(
                URL, HealthCheckConfig(retries=1, delay_seconds=10, timeout_seconds=5)
            )

        assert result is False
        mock_sleep.assert_not_awaited()
