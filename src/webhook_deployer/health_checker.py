"""HTTP readiness probing for the supervised application."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from webhook_deployer.logging import get_logger

log = get_logger("webhook_deployer.health_checker")


@dataclass
class HealthCheckConfig:
    """Retry parameters for a readiness probe."""

    retries: int = 10
    delay_seconds: float = 3.0
    timeout_seconds: float = 5.0


async def check_service_health(url: str, config: HealthCheckConfig | None = None) -> bool:
    """Poll ``url`` until it answers 200 or retries run out."""
    cfg = config or HealthCheckConfig()

    async with httpx.AsyncClient(timeout=cfg.timeout_seconds) as client:
        for attempt in range(1, cfg.retries + 1):
            try:
                resp = await client.get(url)
                if resp.status_code == 200:
                    log.info("health_check_passed", url=url, attempt=attempt)
                    return True
                log.debug("health_check_non_200", url=url, status=resp.status_code)
            except httpx.RequestError as exc:
                log.debug("health_check_request_error", url=url, error=str(exc))

            if attempt < cfg.retries:
                await asyncio.sleep(cfg.delay_seconds)

    log.warning("health_check_failed", url=url, retries=cfg.retries)
    return False
