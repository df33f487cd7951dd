"""
Caller identity for API routes.

Validates Clerk session JWTs with PyJWT and extracts the user id. Falls back
to the X-User-Id header outside production (local tooling and tests).

Verification:
- CLERK_JWKS_URL / CLERK_ISSUER set: RS256 against Clerk's published JWKS
- otherwise CLERK_SECRET_KEY as an HS256 secret (development/testing)
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
from fastapi import Header, Request

from promember.core.config import Settings, settings as default_settings
from promember.core.errors import UnauthenticatedError

logger = logging.getLogger("promember.auth")


def settings_for(request: Request) -> Settings:
    services = getattr(request.app.state, "services", None)
    return services.settings if services is not None else default_settings


@lru_cache(maxsize=8)
def _jwk_client(jwks_url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(jwks_url, cache_keys=True, lifespan=86400)


def _jwks_url(cfg: Settings) -> Optional[str]:
    if cfg.CLERK_JWKS_URL:
        return cfg.CLERK_JWKS_URL
    if cfg.CLERK_ISSUER:
        return f"{cfg.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    return None


def verify_jwt_token(token: str, cfg: Settings) -> Dict[str, Any]:
    """
    Verify a Clerk JWT and return its claims.

    Raises jwt.PyJWTError on an invalid token or missing configuration.
    """
    jwks_url = _jwks_url(cfg)
    if jwks_url:
        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=cfg.CLERK_AUDIENCE,
            issuer=cfg.CLERK_ISSUER,
            options={"verify_aud": bool(cfg.CLERK_AUDIENCE), "verify_exp": True},
        )

    if cfg.CLERK_SECRET_KEY:
        return jwt.decode(
            token,
            cfg.CLERK_SECRET_KEY,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    raise jwt.PyJWTError("No Clerk verification key configured")


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def token_claims(request: Request) -> Optional[Dict[str, Any]]:
    """
    Verified JWT claims for the request, or None when no bearer token was sent.

    Raises:
        UnauthenticatedError: token present but invalid or expired
    """
    cached = getattr(request.state, "token_claims", None)
    if cached is not None:
        return cached

    token = bearer_token(request)
    if token is None:
        return None

    try:
        claims = verify_jwt_token(token, settings_for(request))
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired", code="token_expired")
    except jwt.PyJWTError as e:
        logger.debug("Invalid token: %s", e)
        raise UnauthenticatedError("Invalid token", code="invalid_token")

    if not claims.get("sub"):
        raise UnauthenticatedError("Invalid token", code="invalid_token")
    request.state.token_claims = claims
    return claims


def _header_user_allowed(cfg: Settings) -> bool:
    return cfg.ENVIRONMENT.lower() != "prod"


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> str:
    """
    Resolve the caller's user id.

    Priority:
    1. Clerk JWT from the Authorization header
    2. X-User-Id header (not in production)
    3. UnauthenticatedError
    """
    claims = token_claims(request)
    if claims:
        return claims["sub"]

    if x_user_id and _header_user_allowed(settings_for(request)):
        return x_user_id

    raise UnauthenticatedError(
        "Missing Authorization (Bearer JWT) or X-User-Id header",
        code="unauthenticated",
    )


async def get_optional_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None),
) -> Optional[str]:
    """Like get_current_user_id, but anonymous callers resolve to None."""
    try:
        return await get_current_user_id(request, x_user_id)
    except UnauthenticatedError:
        return None
