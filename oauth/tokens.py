"""Bearer token issuance and verification.

Provides stateless tokens: the upstream QuickBooks credentials travel inside
the encrypted token, so validation needs no storage lookup.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from oauth.codec import TokenCodec, TokenDecodeError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_SECONDS = 60 * 60  # 1 hour
REFRESH_TOKEN_EXPIRE_SECONDS = 90 * 24 * 60 * 60  # 90 days

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class BearerTokenPayload:
    """Everything the server needs to know about a token, carried inside it."""
    kind: str
    client_id: str
    tenant_id: str
    upstream_access_token: str
    upstream_refresh_token: str
    issued_at: int
    expires_at: int
    scope: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BearerTokenPayload":
        return cls(
            kind=str(data["kind"]),
            client_id=str(data["client_id"]),
            tenant_id=str(data["tenant_id"]),
            upstream_access_token=str(data["upstream_access_token"]),
            upstream_refresh_token=str(data["upstream_refresh_token"]),
            issued_at=int(data["issued_at"]),
            expires_at=int(data["expires_at"]),
            scope=data.get("scope"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str

    def to_response(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }


class TokenIssuer:
    """Mints and verifies access/refresh tokens with a TokenCodec."""

    def __init__(
        self,
        codec: TokenCodec,
        access_ttl: int = ACCESS_TOKEN_EXPIRE_SECONDS,
        refresh_ttl: int = REFRESH_TOKEN_EXPIRE_SECONDS,
        default_scope: str = "",
    ):
        self.codec = codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.default_scope = default_scope

    def issue_pair(
        self,
        client_id: str,
        tenant_id: str,
        upstream_access_token: str,
        upstream_refresh_token: str,
        scope: Optional[str] = None,
        now: Optional[int] = None,
    ) -> TokenPair:
        """Create a fresh access/refresh pair carrying the same credentials."""
        now = int(time.time()) if now is None else now
        scope = scope or self.default_scope

        def _payload(kind: str, ttl: int) -> BearerTokenPayload:
            return BearerTokenPayload(
                kind=kind,
                client_id=client_id,
                tenant_id=tenant_id,
                upstream_access_token=upstream_access_token,
                upstream_refresh_token=upstream_refresh_token,
                scope=scope,
                issued_at=now,
                expires_at=now + ttl,
            )

        return TokenPair(
            access_token=self.codec.encrypt(_payload(ACCESS, self.access_ttl).to_dict()),
            refresh_token=self.codec.encrypt(_payload(REFRESH, self.refresh_ttl).to_dict()),
            expires_in=self.access_ttl,
            scope=scope,
        )

    def verify(self, token: str, kind: str, now: Optional[float] = None) -> Optional[BearerTokenPayload]:
        """Decrypt and check a token.

        Returns:
            The payload if the token decrypts, is of the expected kind and
            has not reached expires_at; None otherwise. Callers cannot tell
            tampered, malformed, wrong-kind and expired tokens apart.
        """
        if not token:
            return None

        try:
            payload = BearerTokenPayload.from_dict(self.codec.decrypt(token))
        except TokenDecodeError:
            logger.debug("[TOKEN] Token failed to decrypt")
            return None
        except (KeyError, TypeError, ValueError):
            logger.debug("[TOKEN] Token payload is malformed")
            return None

        if payload.kind != kind:
            logger.debug(f"[TOKEN] Token is not a {kind} token")
            return None

        now = time.time() if now is None else now
        if now >= payload.expires_at:
            logger.debug(f"[TOKEN] {kind.capitalize()} token expired")
            return None

        return payload

    def verify_access_token(self, token: str, now: Optional[float] = None) -> Optional[BearerTokenPayload]:
        return self.verify(token, ACCESS, now)

    def verify_refresh_token(self, token: str, now: Optional[float] = None) -> Optional[BearerTokenPayload]:
        return self.verify(token, REFRESH, now)
