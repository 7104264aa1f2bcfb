from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from Rapport.database import get_db
from Rapport.request_context import get_request_id
from Rapport.schemas.chat import ChatRequest, ChatResponseOut
from Rapport.services.ai_client import AIChatClient
from Rapport.services.chat_service import ChatService
from Rapport.services.chat_stream import ChatStreamRelay
from Rapport.subapps.dependencies import _get_user_locale, enforce_ai_rate_limit, get_ai_client, get_chat_relay


router = APIRouter()


# Single-shot completion over a client-supplied history
@router.post("/chat")
async def chat(
    payload: ChatRequest,
    request: Request,
    user_id: str = Depends(enforce_ai_rate_limit),
    locale: str = Depends(_get_user_locale),
    ai_client: AIChatClient = Depends(get_ai_client),
    db: Session = Depends(get_db),
) -> ChatResponseOut:
    svc = ChatService(db, ai_client)
    return await svc.chat(payload=payload, request_id=get_request_id(request), locale=locale)


# Streams a completion over a client-supplied history as SSE (nothing is persisted)
@router.post("/chat/stream")
async def chat_stream(
    payload: ChatRequest,
    request: Request,
    user_id: str = Depends(enforce_ai_rate_limit),
    locale: str = Depends(_get_user_locale),
    ai_client: AIChatClient = Depends(get_ai_client),
    relay: ChatStreamRelay = Depends(get_chat_relay),
    db: Session = Depends(get_db),
):
    svc = ChatService(db, ai_client, relay)
    return svc.stream_chat(payload=payload, request=request, locale=locale)
