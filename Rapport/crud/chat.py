from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from Rapport.models.chat_models import (
    DEFAULT_CONVERSATION_MODE,
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Create a new conversation owned by `user_id`
def create_conversation(session: Session, user_id: str, title: Optional[str] = None, mode: Optional[str] = None) -> Conversation:
    now = _utcnow()
    conv = Conversation(
        user_id=user_id,
        title=title or DEFAULT_CONVERSATION_TITLE,
        mode=mode or DEFAULT_CONVERSATION_MODE,
        created_at=now,
        updated_at=now,
    )
    session.add(conv)
    session.flush()
    return conv


def get_conversation(session: Session, conversation_id: str) -> Optional[Conversation]:
    return session.get(Conversation, conversation_id)


# List a user's conversations, most recently updated first
def list_conversations(session: Session, user_id: str) -> list[Conversation]:
    stmt = (
        select(Conversation)
        .where(Conversation.user_id == user_id)
        .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
    )
    return list(session.execute(stmt).scalars().all())


# Get chat history for a conversation in replay order
def get_chat_history(session: Session, conversation_id: str) -> list[Message]:
    stmt = select(Message).where(Message.conversation_id == conversation_id).order_by(Message.sequence.asc())
    return list(session.execute(stmt).scalars().all())


# Next sequence = current max + 1 (0 for an empty conversation)
def get_next_sequence(session: Session, conversation_id: str) -> int:
    current = session.execute(
        select(func.max(Message.sequence)).where(Message.conversation_id == conversation_id)
    ).scalar_one_or_none()
    return 0 if current is None else int(current) + 1


# Create a new chat message at an explicit sequence
def create_chat_message(session: Session, conversation_id: str, role: str, content: Any, sequence: int) -> Message:
    msg = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        sequence=sequence,
        created_at=_utcnow(),
    )
    session.add(msg)
    session.flush()
    return msg


# Bump updated_at so the conversation sorts first in listings
def touch_conversation(session: Session, conversation_id: str) -> None:
    conv = session.get(Conversation, conversation_id)
    if conv is None:
        return
    conv.updated_at = _utcnow()
    session.flush()
