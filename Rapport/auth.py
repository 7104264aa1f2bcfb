import logging
import time
from typing import Any, Dict, Optional

import requests
from fastapi import Request
from jose import JWTError, jwt

from Rapport.config import Settings, get_settings
from Rapport.errors import ApiError, unauthorized

logger = logging.getLogger(__name__)

_JWKS_CACHE: Optional[Dict[str, Any]] = None
_JWKS_CACHE_TS: float = 0.0
_JWKS_TTL_SECONDS: int = 300


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


# Fetches JWKS keys (cached for a short TTL) so we can validate incoming JWT signatures
def get_jwks(jwks_url: str) -> list:
    global _JWKS_CACHE, _JWKS_CACHE_TS
    now = time.time()
    if _JWKS_CACHE is not None and (now - _JWKS_CACHE_TS) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE.get("keys", [])
    try:
        response = requests.get(jwks_url, timeout=3.0)
        response.raise_for_status()
        data = response.json()
        _JWKS_CACHE = data
        _JWKS_CACHE_TS = now
        return data.get("keys", [])
    except (requests.RequestException, ValueError) as e:
        if _JWKS_CACHE is not None:
            return _JWKS_CACHE.get("keys", [])
        logger.error("auth.jwks.unavailable: %s", e)
        raise ApiError(503, "auth_unavailable", "Unable to fetch signing keys.")


# Finds the JWK that matches the JWT header `kid` so `jwt.decode()` can verify the signature
def get_public_key(token: str, jwks_url: str) -> dict:
    unverified_header = jwt.get_unverified_header(token)
    for key in get_jwks(jwks_url):
        if key.get("kid") == unverified_header.get("kid"):
            return key
    raise unauthorized("Public key not found.")


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise unauthorized()
    token = auth_header.split(" ", 1)[1].strip()
    if token.count(".") != 2:
        raise unauthorized("Token is not a valid JWT.")
    return token


# Verifies the bearer token (JWKS/RS256, or shared-secret HS256) and returns decoded claims
def verify_jwt(token: str, settings: Settings) -> dict:
    audience = settings.auth_audience
    options = {} if audience else {"verify_aud": False}
    try:
        if settings.auth_jwks_url:
            issuer = settings.auth_jwks_url.split("/.well-known/")[0]
            key = get_public_key(token, settings.auth_jwks_url)
            return jwt.decode(token, key, algorithms=["RS256"], audience=audience, issuer=issuer, options=options)
        if settings.auth_jwt_secret:
            return jwt.decode(token, settings.auth_jwt_secret, algorithms=["HS256"], audience=audience, options=options)
    except JWTError as e:
        raise unauthorized(f"Token verification failed: {e}")

    logger.error("auth.not_configured: set AUTH_JWKS_URL or AUTH_JWT_SECRET")
    raise ApiError(500, "auth_not_configured", "Authentication is not configured.")


# FastAPI dependency: the authenticated user id (`sub` claim), checked before anything else
def require_user_id(request: Request) -> str:
    claims = verify_jwt(_bearer_token(request), _settings_for(request))
    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise unauthorized("Token has no subject.")
    request.state.user_id = user_id
    return user_id
