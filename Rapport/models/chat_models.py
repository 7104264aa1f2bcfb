import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from Rapport.database import Base

DEFAULT_CONVERSATION_TITLE = "New conversation"
DEFAULT_CONVERSATION_MODE = "relationship_coach"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Stores conversation-level metadata (owner, title, AI mode)
class Conversation(Base):
    __tablename__ = "conversations"

    __table_args__ = (
        Index("ix_conversations_user_id_updated_at", "user_id", "updated_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=False)
    title = Column(String(255), nullable=False, default=DEFAULT_CONVERSATION_TITLE)
    mode = Column(String(32), nullable=False, default=DEFAULT_CONVERSATION_MODE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.sequence",
    )


# Stores individual chat turns; `sequence` defines replay order within a conversation
class Message(Base):
    __tablename__ = "messages"

    # A lost read-max-then-write race fails here instead of producing duplicate sequences
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="ux_messages_conversation_id_sequence"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    role = Column(String(16), nullable=False)
    content = Column(JSON, nullable=False)  # str, or a list of text/image blocks
    sequence = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
