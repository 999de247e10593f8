"""HTTP health probe for the deployment after an update."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from aether_updater.logging import get_logger
from aether_updater.retry import Sleep

log = get_logger("aether_updater.health_checker")


@dataclass(frozen=True)
class HealthCheckConfig:
    """Retry configuration for ``check_service_health``."""

    retries: int = 6
    delay_seconds: float = 10.0
    timeout_seconds: float = 10.0


async def check_service_health(
    url: str,
    config: HealthCheckConfig | None = None,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """GET *url* until it answers 200, retrying on errors and non-200 responses."""
    config = config or HealthCheckConfig()
    for attempt in range(config.retries):
        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                resp = await client.get(url)
            if resp.status_code == 200:
                log.debug("health_check_ok", url=url, attempt=attempt + 1)
                return True
            log.debug("health_check_status", url=url, status=resp.status_code)
        except httpx.RequestError as exc:
            log.debug("health_check_error", url=url, error=str(exc))

        if attempt < config.retries - 1:
            await sleep(config.delay_seconds)

    log.warning("health_check_failed", url=url, retries=config.retries)
    return False
