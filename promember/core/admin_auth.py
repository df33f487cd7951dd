"""
Admin authentication.

Supports hybrid authentication:
- Clerk JWT (preferred): Bearer token whose claims carry the admin role
- Legacy X-Admin-Key: shared secret

Auth modes (ADMIN_AUTH_MODE):
- "clerk": only Clerk JWT allowed
- "legacy": only X-Admin-Key allowed
- "hybrid": both allowed; legacy keys are refused when ENVIRONMENT=prod
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from fastapi import Request

from promember.core.auth import bearer_token, settings_for, token_claims
from promember.core.errors import AppError, PermissionError, UnauthenticatedError


@dataclass
class AdminActor:
    """An authenticated admin."""
    actor_type: Literal["clerk", "legacy_key"]
    actor_id: str  # Clerk user ID or "legacy:<hash>"
    actor_email: Optional[str] = None


def is_admin_user(claims: Dict[str, Any]) -> bool:
    """Admin if public_metadata.role == "admin", the isAdmin claim is set, or the org role is admin."""
    public_metadata = claims.get("public_metadata") or claims.get("metadata") or {}
    if isinstance(public_metadata, dict):
        if public_metadata.get("role") == "admin" or public_metadata.get("isAdmin") is True:
            return True
    return claims.get("org_role") == "admin"


def verify_legacy_key(request: Request, expected_key: Optional[str]) -> Optional[AdminActor]:
    if not expected_key:
        return None
    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None
    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="legacy_key", actor_id=f"legacy:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require an admin caller.

    Raises:
        UnauthenticatedError: no usable credentials
        PermissionError: authenticated, but not an admin
    """
    cfg = settings_for(request)
    mode = cfg.ADMIN_AUTH_MODE.lower()
    env = cfg.ENVIRONMENT.lower()

    has_clerk = bool(cfg.CLERK_SECRET_KEY or cfg.CLERK_JWKS_URL or cfg.CLERK_ISSUER)
    if not has_clerk and not cfg.ADMIN_KEY:
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )

    if mode in {"clerk", "hybrid"} and bearer_token(request):
        claims = token_claims(request)
        if claims and is_admin_user(claims):
            return AdminActor(
                actor_type="clerk",
                actor_id=claims["sub"],
                actor_email=claims.get("email"),
            )
        raise PermissionError("Admin role required")

    legacy_allowed = mode == "legacy" or (mode == "hybrid" and env != "prod")
    if legacy_allowed and request.headers.get("X-Admin-Key"):
        actor = verify_legacy_key(request, cfg.ADMIN_KEY)
        if actor:
            return actor
        raise PermissionError("Invalid admin key")

    raise UnauthenticatedError(
        f"Missing admin credentials (mode: {mode})",
        code="admin_unauthorized",
    )
