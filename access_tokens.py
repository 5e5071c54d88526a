"""Signed bearer tokens for the admin identity.

Tokens carry the identity id and the session version they were issued
against. Bumping the version in the store (``revoke_identity_sessions``)
invalidates every token issued before it.
"""

from __future__ import annotations

from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from security_store import SecurityStore

TOKEN_SALT = "admin-security-access-token"


def bearer_token_from_header(header_value: str | None) -> str | None:
    scheme, _, token = (header_value or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessTokenSigner:
    def __init__(self, secret_key: str, ttl_seconds: int = 3600):
        self.ttl_seconds = max(60, int(ttl_seconds))
        self._serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)

    def issue(self, identity: dict[str, Any]) -> str:
        return self._serializer.dumps({"sub": str(identity["id"]), "sv": int(identity["session_version"])})

    def introspect(self, token: str | None, store: SecurityStore) -> str | None:
        """Return the subject id for a live token, or None."""
        if not token:
            return None
        try:
            claims = self._serializer.loads(token, max_age=self.ttl_seconds)
        except (SignatureExpired, BadSignature):
            return None
        if not isinstance(claims, dict):
            return None

        subject = str(claims.get("sub") or "")
        if not subject:
            return None
        identity = store.get_identity_by_id(subject)
        if identity is None:
            return None
        try:
            if int(claims.get("sv", -1)) != int(identity["session_version"]):
                return None
        except (TypeError, ValueError):
            return None
        return subject
