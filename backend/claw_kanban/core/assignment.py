"""
Provider Auto-Assignment
========================

Picks an agent for a card from its role and task type, using the
provider settings document stored in ``app_settings``.
"""

from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from claw_kanban.core.models import AppSettings, CardRole, TaskType
from claw_kanban.core.schemas import ProviderSettings

logger = structlog.get_logger()

SETTINGS_ROW_ID = "main"


def determine_provider(
    settings: ProviderSettings,
    role: Optional[CardRole],
    task_type: Optional[TaskType],
) -> str:
    """
    Resolve the agent for a role/task type pair.

    Falls back to ``claude`` when auto-assignment is off or no role is
    set. Frontend work without a task type is treated as new work.
    """
    if not settings.auto_assign or role is None:
        return "claude"

    providers = settings.role_providers
    if role == CardRole.DEVOPS:
        return providers.devops
    if role == CardRole.BACKEND:
        return providers.backend
    if role == CardRole.FRONTEND:
        if task_type == TaskType.MODIFY:
            return providers.frontend.modify
        if task_type == TaskType.BUGFIX:
            return providers.frontend.bugfix
        return providers.frontend.new
    return "claude"


async def load_provider_settings(db: AsyncSession) -> ProviderSettings:
    """Read the settings row; a missing or corrupt row yields defaults."""
    row = await db.get(AppSettings, SETTINGS_ROW_ID)
    if row is None:
        return ProviderSettings()
    try:
        return ProviderSettings.model_validate(row.data)
    except ValidationError as e:
        logger.warning("Invalid provider settings, using defaults", error=str(e))
        return ProviderSettings()


async def save_provider_settings(db: AsyncSession, value: ProviderSettings) -> None:
    data = value.model_dump(mode="json", by_alias=True)
    row = await db.get(AppSettings, SETTINGS_ROW_ID)
    if row is None:
        db.add(AppSettings(id=SETTINGS_ROW_ID, data=data))
    else:
        row.data = data
    await db.flush()


async def ensure_provider_settings(db: AsyncSession) -> None:
    """Seed the default settings row on first start."""
    if await db.get(AppSettings, SETTINGS_ROW_ID) is None:
        await save_provider_settings(db, ProviderSettings())
        logger.info("Provider settings initialized")
