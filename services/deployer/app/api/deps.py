"""FastAPI dependency helpers."""
from __future__ import annotations

from typing import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.planner_service import DeploymentOrchestrator
from ..domain.tracker import ExecutionStateTracker
from ..persistence.db import session_scope


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; the request's writes commit together or not at all."""
    async with session_scope() as session:
        yield session


def get_orchestrator(session: AsyncSession = Depends(get_db_session)) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(session)


def get_tracker(session: AsyncSession = Depends(get_db_session)) -> ExecutionStateTracker:
    return ExecutionStateTracker(session)


def app_id_from_path(organization: str, app_name: str) -> str:
    """Apps are addressed as ``organization/app`` throughout the service."""
    return f"{organization}/{app_name}"


__all__ = ["get_db_session", "get_orchestrator", "get_tracker", "app_id_from_path"]
