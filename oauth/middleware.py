"""OAuth middleware for MCP endpoints.

Validates Bearer tokens and exposes the QuickBooks credentials they carry
to the tool layer for the duration of the request. Validation is local
decryption; there is no storage lookup.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.tokens import TokenIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuickBooksCredentials:
    access_token: str
    realm_id: str
    client_id: str


_current_credentials: ContextVar[Optional[QuickBooksCredentials]] = ContextVar(
    "quickbooks_credentials", default=None
)


def get_current_credentials() -> Optional[QuickBooksCredentials]:
    """Credentials of the request being served, if it was authenticated."""
    return _current_credentials.get()


def unauthorized_response(error_description: str, resource_metadata_url: str) -> JSONResponse:
    """Return 401 with WWW-Authenticate header pointing to resource metadata (RFC 9728)."""
    return JSONResponse(
        {"error": "unauthorized", "error_description": error_description},
        status_code=401,
        headers={"WWW-Authenticate": f'Bearer resource_metadata="{resource_metadata_url}"'}
    )


class MCPOAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to validate OAuth Bearer tokens for the Streamable HTTP MCP endpoint."""

    def __init__(self, app, tokens: TokenIssuer, resource_metadata_url: str):
        super().__init__(app)
        self.tokens = tokens
        self.resource_metadata_url = resource_metadata_url

    async def dispatch(self, request: Request, call_next):
        auth_header = request.headers.get("Authorization", "")
        if auth_header[:7].lower() != "bearer ":
            logger.info("[AUTH] Request rejected: no Bearer token")
            return unauthorized_response("Missing or invalid Authorization header", self.resource_metadata_url)

        payload = self.tokens.verify_access_token(auth_header[7:].strip())
        if payload is None:
            logger.info("[AUTH] Request rejected: invalid or expired token")
            return unauthorized_response("Invalid or expired token", self.resource_metadata_url)

        credentials = QuickBooksCredentials(
            access_token=payload.upstream_access_token,
            realm_id=payload.tenant_id,
            client_id=payload.client_id,
        )
        request.state.quickbooks_credentials = credentials
        reset_token = _current_credentials.set(credentials)
        try:
            logger.debug(f"[AUTH] Request authorized: client {payload.client_id}, realm {payload.tenant_id}")
            return await call_next(request)
        finally:
            _current_credentials.reset(reset_token)
