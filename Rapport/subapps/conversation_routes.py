from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from Rapport.auth import require_user_id
from Rapport.database import get_db
from Rapport.schemas.chat import (
    ConversationOut,
    ConversationsOut,
    CreateConversationRequest,
    MessagesOut,
    SendMessageOut,
    SendMessageRequest,
)
from Rapport.services.ai_client import AIChatClient
from Rapport.services.chat_service import ChatService
from Rapport.services.chat_stream import ChatStreamRelay
from Rapport.subapps.dependencies import (
    _get_user_locale,
    enforce_ai_rate_limit,
    get_ai_client,
    get_chat_relay,
    get_session_factory,
)


router = APIRouter(prefix="/conversations")


# Creates an empty conversation owned by the caller
@router.post("", status_code=201)
def create_conversation(
    payload: Optional[CreateConversationRequest] = None,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> ConversationOut:
    svc = ChatService(db)
    return svc.create_conversation(user_id=user_id, payload=payload or CreateConversationRequest())


# Lists the caller's conversations, most recently updated first
@router.get("")
def list_conversations(
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> ConversationsOut:
    svc = ChatService(db)
    return svc.list_conversations(user_id=user_id)


# Retrieves all messages for a conversation in sequence order
@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
) -> MessagesOut:
    svc = ChatService(db)
    return svc.list_messages(conversation_id=conversation_id, user_id=user_id)


# Appends a user turn and the assistant's reply (non-streaming)
@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    user_id: str = Depends(enforce_ai_rate_limit),
    locale: str = Depends(_get_user_locale),
    ai_client: AIChatClient = Depends(get_ai_client),
    db: Session = Depends(get_db),
) -> SendMessageOut:
    svc = ChatService(db, ai_client)
    return await svc.send_message(
        conversation_id=conversation_id,
        user_id=user_id,
        payload=payload,
        locale=locale,
    )


# Appends a user turn and streams the assistant's reply as SSE; delivered text is persisted even on disconnect
@router.post("/{conversation_id}/messages/stream")
async def stream_message(
    conversation_id: str,
    payload: SendMessageRequest,
    request: Request,
    user_id: str = Depends(enforce_ai_rate_limit),
    locale: str = Depends(_get_user_locale),
    ai_client: AIChatClient = Depends(get_ai_client),
    relay: ChatStreamRelay = Depends(get_chat_relay),
    session_factory: sessionmaker = Depends(get_session_factory),
    db: Session = Depends(get_db),
):
    svc = ChatService(db, ai_client, relay)
    return svc.stream_message(
        conversation_id=conversation_id,
        user_id=user_id,
        payload=payload,
        request=request,
        session_factory=session_factory,
        locale=locale,
    )
