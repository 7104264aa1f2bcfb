import logging

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from Rapport.auth import require_user_id
from Rapport.errors import ApiError
from Rapport.rate_limiters.rate_limiter import RateLimiter
from Rapport.services.ai.prompt_composer import DEFAULT_LOCALE
from Rapport.services.ai_client import AIChatClient
from Rapport.services.chat_stream import ChatStreamRelay

logger = logging.getLogger(__name__)


def _get_user_locale(request: Request) -> str:
    return request.headers.get("x-user-locale") or DEFAULT_LOCALE


# Socket peer by default; X-Forwarded-For is only read behind a configured number of trusted proxies,
# taking the hop the outermost trusted proxy appended (entries left of it are client-controlled)
def _client_address(request: Request) -> str:
    peer = request.client.host if request.client else "unknown"
    settings = getattr(request.app.state, "settings", None)
    trusted_hops = getattr(settings, "trusted_proxy_hops", 0) or 0
    forwarded = request.headers.get("x-forwarded-for")
    if trusted_hops <= 0 or not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if not hops:
        return peer
    return hops[-trusted_hops] if len(hops) >= trusted_hops else hops[0]


def get_ai_client(request: Request) -> AIChatClient:
    ai_client = getattr(request.app.state, "ai_client", None)
    if ai_client is None:
        raise ApiError(503, "ai_unavailable", "AI service is not configured.")
    return ai_client


def get_chat_relay(request: Request) -> ChatStreamRelay:
    relay = getattr(request.app.state, "chat_relay", None)
    if relay is None:
        raise ApiError(503, "ai_unavailable", "AI service is not configured.")
    return relay


def get_session_factory(request: Request) -> sessionmaker:
    return request.app.state.session_factory


def _enforce(limiter: RateLimiter, name: str, key: str) -> None:
    decision = limiter.check(key)
    if decision.allowed:
        return
    logger.warning("rate_limit.exceeded: limiter=%s key=%s wait_s=%d", name, key, decision.wait_seconds)
    raise ApiError(
        429,
        "rate_limit_exceeded",
        f"Too many requests. Try again in {decision.wait_seconds} seconds.",
        headers={"Retry-After": str(decision.wait_seconds)},
    )


# AI endpoints: quota per authenticated user (client address when there is no identity)
def enforce_ai_rate_limit(request: Request, user_id: str = Depends(require_user_id)) -> str:
    _enforce(request.app.state.ai_rate_limiter, "ai", user_id or _client_address(request))
    return user_id


# Auth endpoints: quota per client address
def enforce_auth_rate_limit(request: Request) -> None:
    _enforce(request.app.state.auth_rate_limiter, "auth", _client_address(request))
