"""
Identity provider adapter.

Claims live in the Clerk user's `public_metadata`, which Clerk embeds in
session tokens. A change becomes visible to a caller on their next token
refresh; clients force one after upgrade or cancel flows.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from promember.core.errors import UpstreamProviderError
from promember.features.membership.models import AuthorizationClaims

CLERK_API_BASE = "https://api.clerk.com/v1"


class IdentityProviderError(UpstreamProviderError):
    """Identity provider call failed."""
    pass


class IdentityProvider(Protocol):
    def get_claims(self, user_id: str) -> Dict[str, Any]:
        """Return the claim map currently attached to the user."""
        ...

    def set_claims(self, user_id: str, claims: AuthorizationClaims) -> None:
        """Replace the claim keys on the user; keys absent from `claims` are removed."""
        ...


class ClerkIdentityProvider:
    """Reads and writes claims through the Clerk Backend API."""

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        api_base: str = CLERK_API_BASE,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not secret_key:
            raise IdentityProviderError("CLERK_SECRET_KEY is not configured")
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._api_base,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
        )

    def get_claims(self, user_id: str) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.get(f"/users/{user_id}")
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Clerk user lookup failed: {e}")
        if response.status_code >= 300:
            raise IdentityProviderError(f"Clerk user lookup failed: {response.status_code} {response.text}")

        metadata = response.json().get("public_metadata") or {}
        return {key: metadata[key] for key in AuthorizationClaims.WIRE_KEYS if key in metadata}

    def set_claims(self, user_id: str, claims: AuthorizationClaims) -> None:
        # The metadata endpoint deep-merges; a null value deletes the key,
        # which is how a stale `expires` is removed.
        public_metadata: Dict[str, Any] = {key: None for key in AuthorizationClaims.WIRE_KEYS}
        public_metadata.update(claims.to_dict())

        try:
            with self._client() as client:
                response = client.patch(
                    f"/users/{user_id}/metadata",
                    json={"public_metadata": public_metadata},
                )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Clerk claim update failed: {e}")
        if response.status_code >= 300:
            raise IdentityProviderError(f"Clerk claim update failed: {response.status_code} {response.text}")
