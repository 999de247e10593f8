"""Tests for aether_updater.health_checker and the optional HTTP health gate."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from conftest import OLD_SHA, RecordingSleep, build_harness, make_settings

from aether_updater.health_checker import HealthCheckConfig, check_service_health
from aether_updater.models import UpdateOutcome

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_response(status_code: int = 200) -> MagicMock:
    """Return a mock httpx.Response with the given status code."""
    resp = MagicMock()
    resp.status_code = status_code
    return resp


def _mock_client(**get_kwargs) -> AsyncMock:
    client = AsyncMock()
    client.get = AsyncMock(**get_kwargs)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _fast_config(retries: int = 3) -> HealthCheckConfig:
    return HealthCheckConfig(retries=retries, delay_seconds=0, timeout_seconds=5)


# ---------------------------------------------------------------------------
# TestCheckServiceHealth
# ---------------------------------------------------------------------------


class TestCheckServiceHealth:
    """Tests for check_service_health()."""

    async def test_passes_on_200(self) -> None:
        client = _mock_client(return_value=_mock_response(200))

        with patch("httpx.AsyncClient", return_value=client):
            result = await check_service_health("http://dashboard:3000/health", _fast_config())

        assert result is True
        assert client.get.await_count == 1

    async def test_retries_until_healthy(self) -> None:
        client = _mock_client(
            side_effect=[
                httpx.ConnectError("refused"),
                _mock_response(503),
                _mock_response(200),
            ]
        )

        with patch("httpx.AsyncClient", return_value=client):
            result = await check_service_health(
                "http://dashboard:3000/health", _fast_config(retries=5)
            )

        assert result is True
        assert client.get.await_count == 3

    async def test_gives_up_after_retries(self) -> None:
        client = _mock_client(return_value=_mock_response(500))

        with patch("httpx.AsyncClient", return_value=client):
            result = await check_service_health(
                "http://dashboard:3000/health", _fast_config(retries=3)
            )

        assert result is False
        assert client.get.await_count == 3

    async def test_waits_with_injected_sleep(self) -> None:
        client = _mock_client(return_value=_mock_response(503))
        sleep = RecordingSleep()
        config = HealthCheckConfig(retries=3, delay_seconds=4.0, timeout_seconds=5)

        with patch("httpx.AsyncClient", return_value=client):
            result = await check_service_health(
                "http://dashboard:3000/health", config, sleep=sleep
            )

        assert result is False
        assert sleep.delays == [4.0, 4.0]


# ---------------------------------------------------------------------------
# TestHealthUrlGate
# ---------------------------------------------------------------------------


class TestHealthUrlGate:
    """The final health step also probes HEALTH_URL when configured."""

    async def test_unhealthy_endpoint_rolls_back(self) -> None:
        harness = build_harness(make_settings(health_url="http://dashboard:3000/health"))

        with patch(
            "aether_updater.orchestrator.check_service_health",
            new=AsyncMock(return_value=False),
        ) as mock_check:
            result = await harness.orchestrator.perform_update("admin-1")

        mock_check.assert_awaited_once()
        assert mock_check.call_args[0][0] == "http://dashboard:3000/health"
        assert result.outcome == UpdateOutcome.ROLLED_BACK
        assert result.error == "Health endpoint check failed"
        assert harness.sandbox.called("git", "reset", "--hard", OLD_SHA)

    async def test_healthy_endpoint_completes(self) -> None:
        harness = build_harness(make_settings(health_url="http://dashboard:3000/health"))

        with patch(
            "aether_updater.orchestrator.check_service_health",
            new=AsyncMock(return_value=True),
        ):
            result = await harness.orchestrator.perform_update("admin-1")

        assert result.outcome == UpdateOutcome.COMPLETED

    async def test_endpoint_retries_use_orchestrator_sleep(self) -> None:
        harness = build_harness(
            make_settings(
                health_url="http://dashboard:3000/health",
                health_poll_interval_seconds=7,
            )
        )
        client = _mock_client(return_value=_mock_response(503))

        with patch("httpx.AsyncClient", return_value=client):
            result = await harness.orchestrator.perform_update("admin-1")

        assert result.outcome == UpdateOutcome.ROLLED_BACK
        assert client.get.await_count == 3
        assert harness.sleep.delays[-2:] == [7, 7]

    async def test_endpoint_not_probed_when_unset(self, harness) -> None:
        with patch(
            "aether_updater.orchestrator.check_service_health",
            new=AsyncMock(return_value=False),
        ) as mock_check:
            result = await harness.orchestrator.perform_update("admin-1")

        mock_check.assert_not_awaited()
        assert result.outcome == UpdateOutcome.COMPLETED
