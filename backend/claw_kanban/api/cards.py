"""
Claw-Kanban - Cards API
=======================

Card CRUD, search and the operator commands that drive agent runs.

Run/stop/review/delete go through the orchestrator, which owns the
process registry; plain edits use the request's database session.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Body, HTTPException, Query, status
from sqlalchemy import String, or_, select, type_coerce

from claw_kanban.api.deps import DbSession, Notifier, Orchestrator
from claw_kanban.core.assignment import determine_provider, load_provider_settings
from claw_kanban.core.models import Card, CardLog, CardStatus, LogKind, RunPhase, SystemLog
from claw_kanban.core.runner.errors import CardNotFoundError
from claw_kanban.core.schemas import (
    CardCreate,
    CardCreatedResponse,
    CardListResponse,
    CardLogListResponse,
    CardLogResponse,
    CardResponse,
    CardUpdate,
    CompletionResponse,
    OkResponse,
    PurgeResponse,
    ReviewRequest,
    RunListResponse,
    RunResponse,
    RunStartedResponse,
    StopResponse,
    TerminalResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/cards", tags=["Cards"])

DUPLICATE_WINDOW = timedelta(seconds=30)
INBOX_WAKE_DEBOUNCE = 8.0
DONE_WAKE_DEBOUNCE = 15.0
CARD_LOG_LIMIT = 500

SEARCH_MAX_TOKENS = 8
SEARCH_FIELDS = (
    Card.title,
    Card.description,
    Card.id,
    Card.source,
    Card.source_message_id,
    Card.source_author,
    Card.source_chat,
    Card.assignee,
    Card.role,
    Card.task_type,
)

# Fields that may not be cleared with an explicit null.
REQUIRED_FIELDS = {"title", "description", "status", "priority"}


# ==========================================================================
# Helper Functions
# ==========================================================================

async def get_card_or_404(card_id: str, db) -> Card:
    card = await db.get(Card, card_id)
    if card is None:
        raise CardNotFoundError(f"card not found: {card_id}", card_id=card_id)
    return card


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ==========================================================================
# Card CRUD
# ==========================================================================

@router.get(
    "",
    response_model=CardListResponse,
    summary="List cards",
)
async def list_cards(
    db: DbSession,
    status_filter: Optional[CardStatus] = Query(None, alias="status", description="Filter by status"),
) -> CardListResponse:
    query = select(Card)
    if status_filter:
        query = query.where(Card.status == status_filter)
    result = await db.execute(query.order_by(Card.updated_at.desc()))
    return CardListResponse(cards=[CardResponse.model_validate(c) for c in result.scalars().all()])


@router.get(
    "/search",
    response_model=CardListResponse,
    summary="Search cards",
    responses={400: {"description": "Missing query"}},
)
async def search_cards(
    db: DbSession,
    q: str = Query("", description="Whitespace-separated tokens; every token must match"),
    status_filter: Optional[CardStatus] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=500),
    offset: int = Query(0, ge=0, le=50_000),
) -> CardListResponse:
    """
    Token search across text columns.

    Each token must appear (substring, case-insensitive for ASCII) in at
    least one of the searched fields.
    """
    tokens = q.split()[:SEARCH_MAX_TOKENS]
    if not tokens:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing_query")

    query = select(Card)
    if status_filter:
        query = query.where(Card.status == status_filter)
    for token in tokens:
        pattern = f"%{escape_like(token)}%"
        query = query.where(
            or_(*(type_coerce(field, String).like(pattern, escape="\\") for field in SEARCH_FIELDS))
        )

    result = await db.execute(query.order_by(Card.updated_at.desc()).limit(limit).offset(offset))
    return CardListResponse(cards=[CardResponse.model_validate(c) for c in result.scalars().all()])


@router.post(
    "",
    response_model=CardCreatedResponse,
    summary="Create card",
)
async def create_card(
    data: CardCreate,
    db: DbSession,
    notifier: Notifier,
) -> CardCreatedResponse:
    """
    Create a card.

    A card with the same title created in the last 30 seconds is
    returned instead (double-submit guard). Without an explicit assignee
    the provider settings pick one from the role.
    """
    since = datetime.now(timezone.utc) - DUPLICATE_WINDOW
    result = await db.execute(
        select(Card.id).where(Card.title == data.title, Card.created_at > since).limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing:
        return CardCreatedResponse(id=existing, duplicate=True)

    assignee = data.assignee.value if data.assignee else None
    if assignee is None and data.role is not None:
        provider_settings = await load_provider_settings(db)
        if provider_settings.auto_assign:
            assignee = determine_provider(provider_settings, data.role, data.task_type)

    card = Card(
        **data.model_dump(exclude={"assignee"}),
        assignee=assignee,
    )
    db.add(card)
    await db.flush()

    db.add(CardLog(card_id=card.id, kind=LogKind.SYSTEM, message=f"Card created ({card.status.value})"))
    db.add(SystemLog(kind=LogKind.SYSTEM, message=f"Card created {card.id} ({card.status.value})"))
    await db.commit()

    logger.info("Card created", card_id=card.id, status=card.status.value, assignee=assignee)

    if card.status == CardStatus.INBOX:
        notifier.queue(f"inbox:{card.id}", f"Kanban: Inbox +1 - {card.title}", INBOX_WAKE_DEBOUNCE)

    return CardCreatedResponse(id=card.id)


@router.get(
    "/{card_id}",
    response_model=CardResponse,
    summary="Get card",
    responses={404: {"description": "Card not found"}},
)
async def get_card(card_id: str, db: DbSession) -> CardResponse:
    return CardResponse.model_validate(await get_card_or_404(card_id, db))


@router.patch(
    "/{card_id}",
    response_model=CardResponse,
    summary="Update card",
    responses={404: {"description": "Card not found"}},
)
async def update_card(
    card_id: str,
    data: CardUpdate,
    db: DbSession,
    notifier: Notifier,
) -> CardResponse:
    """
    Partial update.

    Changing role or task type without naming an assignee re-runs
    auto-assignment. Moving a card from Review/Test to Done by hand
    sends a wake.
    """
    card = await get_card_or_404(card_id, db)
    patch = data.model_dump(exclude_unset=True)

    cleared = sorted(k for k, v in patch.items() if v is None and k in REQUIRED_FIELDS)
    if cleared:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"fields cannot be null: {', '.join(cleared)}",
        )

    previous_status = card.status
    if "assignee" in patch:
        patch["assignee"] = patch["assignee"].value if patch["assignee"] else None

    if ("role" in patch or "task_type" in patch) and "assignee" not in patch:
        role = patch.get("role", card.role)
        task_type = patch.get("task_type", card.task_type)
        provider_settings = await load_provider_settings(db)
        if provider_settings.auto_assign and role is not None:
            card.assignee = determine_provider(provider_settings, role, task_type)

    for field, value in patch.items():
        setattr(card, field, value)
    card.updated_at = datetime.now(timezone.utc)

    changed = ", ".join(patch)
    db.add(CardLog(card_id=card.id, kind=LogKind.SYSTEM, message=f"Updated: {changed}"))
    db.add(SystemLog(kind=LogKind.SYSTEM, message=f"Card updated {card.id}: {changed}"))
    await db.commit()
    await db.refresh(card)

    if previous_status == CardStatus.REVIEW_TEST and card.status == CardStatus.DONE:
        notifier.queue(f"done:{card.id}", f"Kanban: Review/Test -> Done - {card.title}", DONE_WAKE_DEBOUNCE)

    return CardResponse.model_validate(card)


@router.delete(
    "/{card_id}",
    response_model=OkResponse,
    summary="Delete card",
    responses={404: {"description": "Card not found"}},
)
async def delete_card(card_id: str, orchestrator: Orchestrator) -> OkResponse:
    """Stop anything running for the card, then remove it with its history and logs."""
    await orchestrator.delete(card_id)
    return OkResponse()


@router.post(
    "/purge",
    response_model=PurgeResponse,
    summary="Delete every card in a status",
)
async def purge_cards(
    orchestrator: Orchestrator,
    status_filter: CardStatus = Query(..., alias="status"),
) -> PurgeResponse:
    deleted = await orchestrator.purge(status_filter)
    return PurgeResponse(deleted=deleted)


# ==========================================================================
# History
# ==========================================================================

@router.get(
    "/{card_id}/logs",
    response_model=CardLogListResponse,
    summary="Card event log (newest first)",
)
async def list_card_logs(card_id: str, db: DbSession) -> CardLogListResponse:
    result = await db.execute(
        select(CardLog)
        .where(CardLog.card_id == card_id)
        .order_by(CardLog.id.desc())
        .limit(CARD_LOG_LIMIT)
    )
    return CardLogListResponse(logs=[CardLogResponse.model_validate(r) for r in result.scalars().all()])


@router.get(
    "/{card_id}/runs",
    response_model=RunListResponse,
    summary="Run history (newest first)",
)
async def list_card_runs(card_id: str, orchestrator: Orchestrator) -> RunListResponse:
    runs = await orchestrator.store.list_runs(card_id)
    return RunListResponse(runs=[RunResponse.model_validate(r) for r in runs])


@router.get(
    "/{card_id}/terminal",
    response_model=TerminalResponse,
    summary="Tail of the agent log",
)
async def get_terminal(
    card_id: str,
    orchestrator: Orchestrator,
    lines: int = Query(200, description="Clamped to 20..4000"),
    pretty: bool = Query(True, description="Render stream-json as prose"),
    phase: RunPhase = Query(RunPhase.RUN),
) -> TerminalResponse:
    tail = await orchestrator.terminal_tail(card_id, lines=lines, pretty=pretty, phase=phase)
    return TerminalResponse(
        exists=tail.exists,
        path=tail.path,
        text=tail.text,
        phase=tail.phase,
        running=tail.running,
    )


# ==========================================================================
# Run Commands
# ==========================================================================

@router.post(
    "/{card_id}/run",
    response_model=RunStartedResponse,
    summary="Start the assigned agent",
    responses={
        400: {"description": "Unsupported agent or unresolved project path"},
        404: {"description": "Card not found"},
        409: {"description": "Already running"},
    },
)
async def start_run(card_id: str, orchestrator: Orchestrator) -> RunStartedResponse:
    started = await orchestrator.start_run(card_id)
    return RunStartedResponse(pid=started.pid, log_path=started.log_path, cwd=started.cwd, agent=started.agent)


@router.post(
    "/{card_id}/stop",
    response_model=StopResponse,
    summary="Stop running agents",
    responses={
        404: {"description": "Card not found"},
        409: {"description": "Nothing is running"},
    },
)
async def stop_run(card_id: str, orchestrator: Orchestrator) -> StopResponse:
    result = await orchestrator.stop(card_id)
    return StopResponse(stopped=result.stopped, pid=result.pid)


@router.post(
    "/{card_id}/review",
    response_model=RunStartedResponse,
    summary="Start a review run",
    responses={
        400: {"description": "Card not in Review/Test or unresolved project path"},
        404: {"description": "Card not found"},
        409: {"description": "Review already running"},
    },
)
async def start_review(
    card_id: str,
    orchestrator: Orchestrator,
    data: Optional[ReviewRequest] = Body(None),
) -> RunStartedResponse:
    project_path = data.project_path if data else None
    started = await orchestrator.start_review(card_id, project_path)
    return RunStartedResponse(pid=started.pid, log_path=started.log_path, cwd=started.cwd, agent=started.agent)


# ==========================================================================
# Completion Callbacks
# ==========================================================================

@router.post(
    "/{card_id}/run-complete",
    response_model=CompletionResponse,
    summary="Report an implementation exit",
)
async def run_complete(
    card_id: str,
    orchestrator: Orchestrator,
    exit_code: int = Query(0),
    project_path: Optional[str] = Query(None),
) -> CompletionResponse:
    await orchestrator.complete_run(card_id, exit_code, project_path)
    return CompletionResponse(status="completed" if exit_code == 0 else "failed", code=exit_code)


@router.post(
    "/{card_id}/review-complete",
    response_model=CompletionResponse,
    summary="Report a review exit",
)
async def review_complete(
    card_id: str,
    orchestrator: Orchestrator,
    exit_code: int = Query(0),
) -> CompletionResponse:
    await orchestrator.complete_review(card_id, exit_code)
    return CompletionResponse(status="completed" if exit_code == 0 else "failed", code=exit_code)
