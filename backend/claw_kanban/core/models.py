"""
Claw-Kanban - Database Models
=============================

SQLAlchemy models for the board: cards, their run history, per-card
event logs, the system log and provider settings.
"""

import enum
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from claw_kanban.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class CardStatus(str, enum.Enum):
    """Card lifecycle status (closed set)."""
    INBOX = "Inbox"
    PLANNED = "Planned"
    STAGING = "Staging"            # manual triage, no automatic transitions
    IN_PROGRESS = "In Progress"
    REVIEW_TEST = "Review/Test"
    DONE = "Done"
    STOPPED = "Stopped"


class AgentKind(str, enum.Enum):
    """Agents a card can be assigned to."""
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    COPILOT = "copilot"            # HTTP stream, OpenAI-compatible
    GEMINI_API = "gemini-api"      # HTTP stream, Gemini SSE


class CardRole(str, enum.Enum):
    DEVOPS = "devops"
    BACKEND = "backend"
    FRONTEND = "frontend"


class TaskType(str, enum.Enum):
    NEW = "new"
    MODIFY = "modify"
    BUGFIX = "bugfix"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class RunPhase(str, enum.Enum):
    RUN = "run"          # implementation
    REVIEW = "review"    # automated verification


class LogKind(str, enum.Enum):
    SYSTEM = "system"
    ERROR = "error"
    INBOUND = "inbound"


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_card_id() -> str:
    """Short sortable-ish id, e.g. ``c_3f9a1b2c4d5e_18d2f0a1b2c``."""
    return f"c_{secrets.token_hex(6)}_{int(time.time() * 1000):x}"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Card(Base, TimestampMixin):
    """
    A unit of work on the board.

    Mutated by the run orchestrator (status, timestamps) and by operator
    edits (title, description, assignee). Only delete/purge remove it.
    """

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=new_card_id,
    )

    # Intake
    source: Mapped[str] = mapped_column(
        String(50),
        default="manual",
        nullable=False,
    )
    source_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_chat: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Content
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        default="",
        nullable=False,
    )

    # Lifecycle
    status: Mapped[CardStatus] = mapped_column(
        Enum(CardStatus, values_callable=_values, native_enum=False, length=20),
        default=CardStatus.INBOX,
        nullable=False,
        index=True,
    )
    assignee: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )  # agent kind; kept as text so unknown agents surface as unsupported_agent
    priority: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # 0-5

    # Classification (auto-assignment only)
    role: Mapped[Optional[CardRole]] = mapped_column(
        Enum(CardRole, values_callable=_values, native_enum=False, length=20),
        nullable=True,
    )
    task_type: Mapped[Optional[TaskType]] = mapped_column(
        Enum(TaskType, values_callable=_values, native_enum=False, length=20),
        nullable=True,
    )

    # Execution
    project_path: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Card {self.id} [{self.status.value}]>"


class CardRun(Base):
    """
    One execution attempt of a card by one agent.

    Append-only per attempt: created ``running``, flipped to ``stopped``
    on exit, stop or delete. Ordered by id for recency.
    """

    __tablename__ = "card_runs"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    card_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("cards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    agent: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    phase: Mapped[RunPhase] = mapped_column(
        Enum(RunPhase, values_callable=_values, native_enum=False, length=10),
        default=RunPhase.RUN,
        nullable=False,
    )
    pid: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )  # -1 for HTTP-streamed agents
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, values_callable=_values, native_enum=False, length=10),
        default=RunStatus.RUNNING,
        nullable=False,
        index=True,
    )
    log_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    cwd: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<CardRun {self.id} {self.card_id}/{self.phase.value} [{self.status.value}]>"


class CardLog(Base):
    """Append-only event log for a card."""

    __tablename__ = "card_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    card_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("cards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    kind: Mapped[LogKind] = mapped_column(
        Enum(LogKind, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)


class SystemLog(Base):
    """Board-wide event log."""

    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    kind: Mapped[LogKind] = mapped_column(
        Enum(LogKind, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)


class AppSettings(Base):
    """Single-row JSON settings document (id ``main``)."""

    __tablename__ = "app_settings"

    id: Mapped[str] = mapped_column(String(20), primary_key=True, default="main")
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
