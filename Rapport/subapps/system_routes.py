from fastapi import APIRouter, Depends, Request

from Rapport.auth import require_user_id
from Rapport.request_context import get_request_id
from Rapport.schemas.chat import AuthSessionOut
from Rapport.subapps.dependencies import enforce_auth_rate_limit


router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ping")
def ping():
    return {"pong": True}


# Confirms the bearer token is valid; rate limited per client address before verification
@router.get("/auth/session", dependencies=[Depends(enforce_auth_rate_limit)])
def auth_session(request: Request, user_id: str = Depends(require_user_id)) -> AuthSessionOut:
    return AuthSessionOut(authenticated=True, user_id=user_id, request_id=get_request_id(request))
