from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from Rapport.crud.chat import (
    create_chat_message,
    create_conversation,
    get_chat_history,
    get_conversation,
    get_next_sequence,
    list_conversations,
    touch_conversation,
)
from Rapport.errors import ApiError, forbidden, not_found
from Rapport.models.chat_models import DEFAULT_CONVERSATION_MODE, Conversation, Message
from Rapport.schemas.chat import (
    ChatCompletionOut,
    ChatRequest,
    ChatResponseOut,
    ConversationOut,
    ConversationsOut,
    CreateConversationRequest,
    MessageOut,
    MessagesOut,
    SendMessageOut,
    SendMessageRequest,
    UsageOut,
)
from Rapport.services.ai.prompt_composer import resolve_ai_mode
from Rapport.services.ai_client import AIChatClient, ChatCompletion
from Rapport.services.chat_stream import ChatStreamRelay

logger = logging.getLogger(__name__)


def _content_for_storage(content: Any) -> Any:
    if isinstance(content, str):
        return content
    return [block.model_dump() for block in content]


def conversation_out(conv: Conversation) -> ConversationOut:
    return ConversationOut(
        id=conv.id,
        owner_id=conv.user_id,
        title=conv.title,
        mode=conv.mode,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
    )


def message_out(msg: Message) -> MessageOut:
    return MessageOut(
        id=msg.id,
        conversation_id=msg.conversation_id,
        role=msg.role,
        content=msg.content,
        sequence=msg.sequence,
        created_at=msg.created_at,
    )


def completion_out(completion: ChatCompletion) -> ChatCompletionOut:
    return ChatCompletionOut(
        content=completion.content,
        model=completion.model,
        usage=UsageOut(input_tokens=completion.input_tokens, output_tokens=completion.output_tokens),
        stop_reason=completion.stop_reason,
    )


# Writes the assistant turn in its own session so the request session's lifecycle can't invalidate it
def persist_assistant_turn(
    session_factory: sessionmaker,
    *,
    conversation_id: str,
    sequence: int,
    text: str,
) -> None:
    session: Session = session_factory()
    try:
        create_chat_message(session, conversation_id, "assistant", text, sequence)
        touch_conversation(session, conversation_id)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


class ChatService:
    # `ai_client` may be omitted for the conversation reads and creates, which never call the provider
    def __init__(
        self,
        db: Session,
        ai_client: Optional[AIChatClient] = None,
        relay: Optional[ChatStreamRelay] = None,
    ):
        self.db = db
        self.ai_client = ai_client
        if relay is None and ai_client is not None:
            relay = ChatStreamRelay(ai_client)
        self.relay = relay

    # ---- stateless chat (history supplied by the client) ----

    async def chat(self, *, payload: ChatRequest, request_id: str, locale: Optional[str] = None) -> ChatResponseOut:
        completion = await self.ai_client.chat(
            [turn.model_dump() for turn in payload.messages],
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            mode=payload.mode,
            context=payload.context,
            locale=locale,
        )
        return ChatResponseOut(**completion_out(completion).model_dump(), request_id=request_id)

    def stream_chat(self, *, payload: ChatRequest, request: Request, locale: Optional[str] = None) -> StreamingResponse:
        return self.relay.stream_response(
            request,
            [turn.model_dump() for turn in payload.messages],
            label="chat",
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            mode=payload.mode,
            context=payload.context,
            locale=locale,
        )

    # ---- conversations ----

    def create_conversation(self, *, user_id: str, payload: CreateConversationRequest) -> ConversationOut:
        mode = resolve_ai_mode(payload.mode).value if payload.mode else DEFAULT_CONVERSATION_MODE
        conv = create_conversation(self.db, user_id, title=payload.title, mode=mode)
        self.db.commit()
        logger.info("conversation.created: id=%s mode=%s", conv.id, conv.mode)
        return conversation_out(conv)

    def list_conversations(self, *, user_id: str) -> ConversationsOut:
        return ConversationsOut(conversations=[conversation_out(c) for c in list_conversations(self.db, user_id)])

    def list_messages(self, *, conversation_id: str, user_id: str) -> MessagesOut:
        self._get_owned_conversation(conversation_id, user_id)
        return MessagesOut(messages=[message_out(m) for m in get_chat_history(self.db, conversation_id)])

    # Ownership is re-checked on every request; not cached
    def _get_owned_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conv = get_conversation(self.db, conversation_id)
        if conv is None:
            raise not_found("Conversation not found")
        if conv.user_id != user_id:
            raise forbidden("You do not own this conversation")
        return conv

    # Loads history, persists the new user turn, and returns (conversation, history, user message)
    def _append_user_turn(self, conversation_id: str, user_id: str, content: Any) -> tuple[Conversation, list[dict], Message]:
        conv = self._get_owned_conversation(conversation_id, user_id)
        history = [{"role": m.role, "content": m.content} for m in get_chat_history(self.db, conversation_id)]
        stored = _content_for_storage(content)

        try:
            user_msg = create_chat_message(
                self.db, conversation_id, "user", stored, get_next_sequence(self.db, conversation_id)
            )
            touch_conversation(self.db, conversation_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ApiError(409, "conflict", "Conversation was modified concurrently. Please retry.")

        history.append({"role": "user", "content": stored})
        return conv, history, user_msg

    async def send_message(
        self,
        *,
        conversation_id: str,
        user_id: str,
        payload: SendMessageRequest,
        locale: Optional[str] = None,
    ) -> SendMessageOut:
        conv, history, user_msg = self._append_user_turn(conversation_id, user_id, payload.content)

        completion = await self.ai_client.chat(
            history,
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            mode=conv.mode,
            context=payload.context,
            locale=locale,
        )

        try:
            assistant_msg = create_chat_message(
                self.db, conversation_id, "assistant", completion.content, user_msg.sequence + 1
            )
            touch_conversation(self.db, conversation_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ApiError(409, "conflict", "Conversation was modified concurrently. Please retry.")

        return SendMessageOut(
            user_message=message_out(user_msg),
            assistant_message=message_out(assistant_msg),
            response=completion_out(completion),
        )

    def stream_message(
        self,
        *,
        conversation_id: str,
        user_id: str,
        payload: SendMessageRequest,
        request: Request,
        session_factory: sessionmaker,
        locale: Optional[str] = None,
    ) -> StreamingResponse:
        conv, history, user_msg = self._append_user_turn(conversation_id, user_id, payload.content)
        assistant_sequence = user_msg.sequence + 1

        def _persist(text: str) -> None:
            persist_assistant_turn(
                session_factory,
                conversation_id=conversation_id,
                sequence=assistant_sequence,
                text=text,
            )

        return self.relay.stream_response(
            request,
            history,
            on_finish=_persist,
            label=f"conversation:{conversation_id}",
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            mode=conv.mode,
            context=payload.context,
            locale=locale,
        )
