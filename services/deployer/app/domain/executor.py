"""Client starting the external deployment workflow."""
from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from ..config import DeployerSettings, get_settings

logger = structlog.get_logger(__name__)


class WorkflowClient:
    """Hand a new plan over to the executor workflow engine."""

    def __init__(self, settings: DeployerSettings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    async def start(self, app_id: str, app_short_id: str, plan_id: str) -> dict[str, Any] | None:
        settings = self._settings.executor
        if not settings.workflow_url:
            logger.info("workflow.skipped", app_id=app_id, plan_id=plan_id, reason="workflow_url not configured")
            return None
        payload = {
            "serviceAccount": settings.service_account,
            "appId": app_id,
            "appShortId": app_short_id,
            "planId": plan_id,
        }

        start = time.perf_counter()
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(settings.workflow_url, json=payload, timeout=settings.timeout_s)
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info("workflow.started", app_id=app_id, plan_id=plan_id, latency_ms=latency_ms, status_code=response.status_code)
        response.raise_for_status()
        return response.json() if response.content else {}


__all__ = ["WorkflowClient"]
