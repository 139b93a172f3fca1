"""
Claw-Kanban - Pydantic Schemas
==============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from claw_kanban.core.models import (
    AgentKind,
    CardRole,
    CardStatus,
    LogKind,
    RunPhase,
    RunStatus,
    TaskType,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Card Schemas
# ==========================================================================

class CardCreate(BaseSchema):
    """Schema for creating a card."""

    source: str = "manual"
    source_message_id: Optional[str] = None
    source_author: Optional[str] = None
    source_chat: Optional[str] = None
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    status: CardStatus = CardStatus.INBOX
    assignee: Optional[AgentKind] = None
    priority: int = Field(0, ge=0, le=5)
    role: Optional[CardRole] = None
    task_type: Optional[TaskType] = None
    project_path: Optional[str] = Field(None, max_length=1000)


class CardUpdate(BaseSchema):
    """Schema for editing a card (partial, unknown fields rejected)."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="forbid",
    )

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[CardStatus] = None
    assignee: Optional[AgentKind] = None
    priority: Optional[int] = Field(None, ge=0, le=5)
    role: Optional[CardRole] = None
    task_type: Optional[TaskType] = None
    project_path: Optional[str] = Field(None, max_length=1000)


class CardResponse(TimestampSchema):
    """Schema for card in responses."""

    id: str
    source: str
    source_message_id: Optional[str]
    source_author: Optional[str]
    source_chat: Optional[str]
    title: str
    description: str
    status: CardStatus
    assignee: Optional[str]
    priority: int
    role: Optional[CardRole]
    task_type: Optional[TaskType]
    project_path: Optional[str]


class CardListResponse(BaseSchema):
    cards: list[CardResponse]


class CardCreatedResponse(BaseSchema):
    id: str
    duplicate: bool = False


# ==========================================================================
# Run Schemas
# ==========================================================================

class RunResponse(BaseSchema):
    """Schema for a run record."""

    id: int
    card_id: str
    created_at: datetime
    agent: str
    phase: RunPhase
    pid: Optional[int]
    status: RunStatus
    log_path: Optional[str]
    cwd: Optional[str]


class RunListResponse(BaseSchema):
    runs: list[RunResponse]


class RunStartedResponse(BaseSchema):
    """Returned by start-run and start-review."""

    ok: bool = True
    pid: Optional[int]
    log_path: str
    cwd: str
    agent: str


class StopResponse(BaseSchema):
    ok: bool = True
    stopped: bool
    pid: Optional[int] = None


class CompletionResponse(BaseSchema):
    """Returned by the run/review completion callbacks."""

    ok: bool = True
    status: Literal["completed", "failed"]
    code: int


class ReviewRequest(BaseSchema):
    """Optional body for start-review."""

    project_path: Optional[str] = None


class TerminalResponse(BaseSchema):
    """Tail of a run log."""

    ok: bool = True
    exists: bool
    path: str
    text: str
    phase: RunPhase
    running: bool


# ==========================================================================
# Event Log Schemas
# ==========================================================================

class CardLogResponse(BaseSchema):
    id: int
    card_id: str
    created_at: datetime
    kind: LogKind
    message: str


class CardLogListResponse(BaseSchema):
    logs: list[CardLogResponse]


# ==========================================================================
# Inbox Schemas
# ==========================================================================

class InboxMessage(BaseSchema):
    """Chat/webhook message turned into an Inbox card."""

    source: str = "telegram"
    message_id: Optional[str] = None
    author: Optional[str] = None
    chat: Optional[str] = None
    text: str = Field(min_length=1)


# ==========================================================================
# Provider Settings Schemas
# ==========================================================================

ProcessAgent = Literal["claude", "codex", "gemini"]


class FrontendProviders(BaseSchema):
    new: ProcessAgent = "gemini"
    modify: ProcessAgent = "claude"
    bugfix: ProcessAgent = "claude"


class RoleProviders(BaseSchema):
    devops: ProcessAgent = "claude"
    backend: ProcessAgent = "codex"
    frontend: FrontendProviders = Field(default_factory=FrontendProviders)


class ProviderSettings(BaseSchema):
    """Auto-assignment policy stored in the ``app_settings`` row."""

    role_providers: RoleProviders = Field(default_factory=RoleProviders, alias="roleProviders")
    auto_assign: bool = Field(True, alias="autoAssign")


class ProviderSettingsResponse(BaseSchema):
    settings: ProviderSettings


# ==========================================================================
# Generic Schemas
# ==========================================================================

class OkResponse(BaseSchema):
    ok: bool = True


class PurgeResponse(BaseSchema):
    ok: bool = True
    deleted: int


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    ok: bool = True
    status: str
    version: str
    environment: str
    database: str
    gateway: str
