"""
Claw-Kanban - Provider Settings API
===================================

Read and replace the auto-assignment policy.
"""

from fastapi import APIRouter

from claw_kanban.api.deps import DbSession
from claw_kanban.core.assignment import load_provider_settings, save_provider_settings
from claw_kanban.core.schemas import ProviderSettings, ProviderSettingsResponse

router = APIRouter(prefix="/settings", tags=["Settings"])


@router.get(
    "",
    response_model=ProviderSettingsResponse,
    response_model_by_alias=True,
    summary="Get provider settings",
)
async def get_provider_settings(db: DbSession) -> ProviderSettingsResponse:
    return ProviderSettingsResponse(settings=await load_provider_settings(db))


@router.put(
    "",
    response_model=ProviderSettingsResponse,
    response_model_by_alias=True,
    summary="Replace provider settings",
)
async def put_provider_settings(data: ProviderSettings, db: DbSession) -> ProviderSettingsResponse:
    await save_provider_settings(db, data)
    await db.commit()
    return ProviderSettingsResponse(settings=data)
