"""
Claw-Kanban - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from claw_kanban.core.database import get_db
from claw_kanban.core.runner.orchestrator import CardOrchestrator
from claw_kanban.core.runner.wake import WakeNotifier


# ==========================================================================
# Components
# ==========================================================================

def get_orchestrator(request: Request) -> CardOrchestrator:
    """The orchestrator built in the application lifespan."""
    return request.app.state.orchestrator


def get_notifier(orchestrator: Annotated[CardOrchestrator, Depends(get_orchestrator)]) -> WakeNotifier:
    return orchestrator.notifier


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Orchestrator = Annotated[CardOrchestrator, Depends(get_orchestrator)]
Notifier = Annotated[WakeNotifier, Depends(get_notifier)]
