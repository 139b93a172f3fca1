"""
Claw-Kanban - Card Store
========================

Durable card, run and event-log records. This is the source of truth
across restarts; the in-memory process registry is only a cache.

Every operation opens its own short session and commits before
returning, so no transaction ever spans an agent run.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from claw_kanban.core.models import (
    Card,
    CardLog,
    CardRun,
    CardStatus,
    LogKind,
    RunPhase,
    RunStatus,
    SystemLog,
)

logger = structlog.get_logger()


class CardStore:
    """Persistent store used by the run orchestrator."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ==========================================================================
    # Cards
    # ==========================================================================

    async def get_card(self, card_id: str) -> Optional[Card]:
        async with self._session_factory() as session:
            return await session.get(Card, card_id)

    async def update_card_status(self, card_id: str, status: CardStatus) -> None:
        """Set status and bump ``updated_at``."""
        async with self._session_factory() as session:
            await session.execute(
                update(Card)
                .where(Card.id == card_id)
                .values(status=status, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()

    async def card_ids_with_status(self, status: CardStatus) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(Card.id).where(Card.status == status))
            return list(result.scalars().all())

    async def delete_card(self, card_id: str) -> None:
        """Remove a card with its runs and event log."""
        async with self._session_factory() as session:
            await session.execute(delete(CardRun).where(CardRun.card_id == card_id))
            await session.execute(delete(CardLog).where(CardLog.card_id == card_id))
            await session.execute(delete(Card).where(Card.id == card_id))
            await session.commit()
        logger.info("Card deleted", card_id=card_id)

    # ==========================================================================
    # Runs
    # ==========================================================================

    async def insert_run(
        self,
        card_id: str,
        agent: str,
        phase: RunPhase,
        pid: Optional[int],
        log_path: str,
        cwd: str,
    ) -> CardRun:
        async with self._session_factory() as session:
            run = CardRun(
                card_id=card_id,
                agent=agent,
                phase=phase,
                pid=pid,
                status=RunStatus.RUNNING,
                log_path=log_path,
                cwd=cwd,
            )
            session.add(run)
            await session.commit()
            return run

    async def update_run_status(self, run_id: int, status: RunStatus) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(CardRun).where(CardRun.id == run_id).values(status=status)
            )
            await session.commit()

    async def latest_run(
        self,
        card_id: str,
        phase: Optional[RunPhase] = None,
    ) -> Optional[CardRun]:
        """Most recent run for a card, optionally restricted to one phase."""
        async with self._session_factory() as session:
            query = select(CardRun).where(CardRun.card_id == card_id)
            if phase is not None:
                query = query.where(CardRun.phase == phase)
            result = await session.execute(query.order_by(CardRun.id.desc()).limit(1))
            return result.scalar_one_or_none()

    async def list_runs(self, card_id: str) -> Sequence[CardRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardRun)
                .where(CardRun.card_id == card_id)
                .order_by(CardRun.id.desc())
            )
            return result.scalars().all()

    async def running_runs(self) -> Sequence[CardRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardRun)
                .where(CardRun.status == RunStatus.RUNNING)
                .order_by(CardRun.id)
            )
            return result.scalars().all()

    # ==========================================================================
    # Event Logs
    # ==========================================================================

    async def append_card_log(self, card_id: str, kind: LogKind, message: str) -> None:
        async with self._session_factory() as session:
            session.add(CardLog(card_id=card_id, kind=kind, message=message))
            await session.commit()

    async def append_system_log(self, kind: LogKind, message: str) -> None:
        async with self._session_factory() as session:
            session.add(SystemLog(kind=kind, message=message))
            await session.commit()
