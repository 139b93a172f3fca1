"""
Claw-Kanban - Inbox Ingestion
=============================

Turns chat/webhook messages (Telegram by default) into Inbox cards.

A leading ``#`` is treated as a command marker and dropped. The full
text becomes the description; the title is the text cut to 80
characters.
"""

import structlog
from fastapi import APIRouter

from claw_kanban.api.deps import DbSession, Notifier
from claw_kanban.core.models import Card, CardLog, CardStatus, LogKind
from claw_kanban.core.schemas import CardCreatedResponse, InboxMessage

logger = structlog.get_logger()

router = APIRouter(prefix="/inbox", tags=["Inbox"])

TITLE_MAX_CHARS = 80
INBOX_WAKE_DEBOUNCE = 8.0


def normalize_message(text: str) -> tuple[str, str]:
    """Return ``(title, description)`` for an inbound message."""
    body = text.lstrip()
    if body.startswith("#"):
        body = body[1:].lstrip()
    title = body[:TITLE_MAX_CHARS] + "…" if len(body) > TITLE_MAX_CHARS else body
    return title, body


@router.post(
    "",
    response_model=CardCreatedResponse,
    summary="Ingest a chat message as an Inbox card",
)
async def ingest_message(
    message: InboxMessage,
    db: DbSession,
    notifier: Notifier,
) -> CardCreatedResponse:
    title, description = normalize_message(message.text)

    card = Card(
        source=message.source,
        source_message_id=message.message_id,
        source_author=message.author,
        source_chat=message.chat,
        title=title,
        description=description,
        status=CardStatus.INBOX,
        priority=0,
    )
    db.add(card)
    await db.flush()
    db.add(CardLog(card_id=card.id, kind=LogKind.INBOUND, message=f"{message.source} inbound message"))
    await db.commit()

    logger.info("Inbound message ingested", card_id=card.id, source=message.source)
    notifier.queue(f"inbox:{card.id}", f"Kanban: Inbox +1 - {title}", INBOX_WAKE_DEBOUNCE)
    return CardCreatedResponse(id=card.id)
