"""OAuth 2.1 endpoints for the QuickBooks MCP server.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/*)
- Client registration (/register)
- Authorization flow (/authorize, then /callback from QuickBooks)
- Token endpoint (/token)

The server is an intermediary: clients never see raw QuickBooks tokens.
The tokens handed out are encrypted payloads carrying the QuickBooks
credentials (see oauth.tokens).
"""

import base64
import binascii
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import unquote_plus

from fastapi import APIRouter, Request
from starlette.exceptions import HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from oauth.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectUriError,
    InvalidRequestError,
    OAuthError,
    ServerError,
    UnknownClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    UpstreamConfigurationError,
    UpstreamError,
    UpstreamRejectedError,
    add_query_params,
    error_redirect,
    error_response,
)
from oauth.pkce import SUPPORTED_METHODS, verify_code_challenge
from oauth.registration import SUPPORTED_AUTH_METHODS, register_client
from oauth.stores import (
    AUTHORIZATION_CODE_TTL_SECONDS,
    PENDING_AUTHORIZATION_TTL_SECONDS,
    AuthorizationCode,
    ClientRegistration,
    ClientRegistry,
    PendingAuthorization,
    TTLStore,
)
from oauth.tokens import TokenIssuer
from oauth.upstream import ACCOUNTING_SCOPE, UpstreamAdapter

logger = logging.getLogger(__name__)

SCOPES_SUPPORTED = [ACCOUNTING_SCOPE]
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class OAuthBridge:
    """Shared state and collaborators for the OAuth endpoints."""
    issuer: str
    clients: ClientRegistry
    pending: TTLStore
    codes: TTLStore
    tokens: TokenIssuer
    upstream: UpstreamAdapter

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.issuer}/.well-known/oauth-protected-resource"


def authorization_server_metadata(issuer: str) -> dict:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "registration_endpoint": f"{issuer}/register",
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": list(SUPPORTED_AUTH_METHODS),
        "code_challenge_methods_supported": list(SUPPORTED_METHODS),
        "scopes_supported": SCOPES_SUPPORTED,
    }


def protected_resource_metadata(issuer: str) -> dict:
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": f"{issuer}/mcp",
        "authorization_servers": [issuer],
        "scopes_supported": SCOPES_SUPPORTED,
        "bearer_methods_supported": ["header"],
    }


async def _read_params(request: Request) -> dict:
    """Token request parameters from a form or JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequestError("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return {k: str(v) for k, v in data.items() if v is not None}

    try:
        form = await request.form()
    except HTTPException:
        raise InvalidRequestError("Malformed request body")
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _client_credentials(request: Request, params: dict) -> Tuple[Optional[str], Optional[str]]:
    """client_id/client_secret from the body, falling back to HTTP Basic."""
    client_id = params.get("client_id") or None
    client_secret = params.get("client_secret") or None

    auth_header = request.headers.get("authorization", "")
    if auth_header[:6].lower() == "basic ":
        try:
            decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            raise InvalidClientError("Malformed Basic authorization header")
        basic_id, sep, basic_secret = decoded.partition(":")
        if not sep:
            raise InvalidClientError("Malformed Basic authorization header")
        client_id = client_id or unquote_plus(basic_id) or None
        client_secret = client_secret or unquote_plus(basic_secret) or None

    return client_id, client_secret


def _authenticate_client(client: ClientRegistration, client_secret: Optional[str]) -> None:
    if client.is_public:
        return
    if not client_secret or not hmac.compare_digest(
        client_secret.encode("utf-8"), (client.client_secret or "").encode("utf-8")
    ):
        raise InvalidClientError("Invalid client credentials")


def create_oauth_router(bridge: OAuthBridge) -> APIRouter:
    """Build the OAuth router around the given bridge state."""
    router = APIRouter(tags=["oauth"])

    # ============== OAuth 2.1 Discovery Endpoints ==============

    @router.get("/.well-known/oauth-protected-resource")
    @router.get("/.well-known/oauth-protected-resource/mcp")
    async def oauth_protected_resource():
        return protected_resource_metadata(bridge.issuer)

    @router.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server():
        return authorization_server_metadata(bridge.issuer)

    # ============== Client Registration ==============

    @router.post("/register")
    async def register(request: Request):
        """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
        try:
            try:
                metadata = await request.json()
            except ValueError:
                metadata = None
            client = register_client(bridge.clients, metadata)
        except OAuthError as e:
            logger.info(f"[REGISTER] Rejected: {e.error} ({e.description})")
            return error_response(e)

        return JSONResponse(client.to_response(), status_code=201, headers=NO_STORE)

    # ============== Authorization Flow ==============

    @router.get("/authorize")
    async def authorize(
        response_type: str = "",
        client_id: str = "",
        redirect_uri: str = "",
        scope: str = "",
        state: str = "",
        code_challenge: str = "",
        code_challenge_method: str = "S256",
    ):
        """Validate the client request and send the user to QuickBooks."""
        try:
            if response_type != "code":
                raise UnsupportedResponseTypeError("Only 'code' response type is supported")
            if not client_id:
                raise InvalidRequestError("client_id is required")

            client = bridge.clients.get(client_id)
            if not client:
                raise UnknownClientError("Unknown client_id")

            if not redirect_uri or redirect_uri not in client.redirect_uris:
                raise InvalidRedirectUriError("redirect_uri does not match registered URIs")
        except OAuthError as e:
            logger.info(f"[AUTHORIZE] Rejected: {e.error} ({e.description})")
            return error_response(e)

        # From here the client's redirect target is trusted, so errors go back there
        if not code_challenge:
            return error_redirect(redirect_uri, "invalid_request", "code_challenge is required (PKCE)", state)
        method = code_challenge_method or "S256"
        if method not in SUPPORTED_METHODS:
            return error_redirect(
                redirect_uri, "invalid_request", f"Unsupported code_challenge_method: {method}", state
            )

        internal_state = secrets.token_hex(16)
        try:
            upstream_url = bridge.upstream.build_authorize_url(scope=ACCOUNTING_SCOPE, state=internal_state)
        except UpstreamConfigurationError as e:
            logger.error(f"[AUTHORIZE] {e}")
            return error_response(ServerError("QuickBooks OAuth is not configured"))

        bridge.pending.put(internal_state, PendingAuthorization(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state or None,
            code_challenge=code_challenge,
            code_challenge_method=method,
            scope=scope or None,
            expires_at=time.time() + PENDING_AUTHORIZATION_TTL_SECONDS,
        ))
        logger.info(f"[AUTHORIZE] Redirecting client {client_id} to QuickBooks")
        return RedirectResponse(url=upstream_url, status_code=302)

    @router.get("/callback")
    async def callback(request: Request):
        """QuickBooks redirects here after the user approves (or denies)."""
        query = request.query_params
        internal_state = query.get("state", "")

        pending = bridge.pending.pop(internal_state) if internal_state else None
        if pending is None:
            logger.info("[CALLBACK] Unknown or expired authorization state")
            return HTMLResponse("<h1>Invalid or expired authorization state</h1>", status_code=400)

        upstream_error = query.get("error")
        if upstream_error:
            logger.info(f"[CALLBACK] QuickBooks returned error: {upstream_error}")
            return error_redirect(
                pending.redirect_uri, upstream_error, query.get("error_description"), pending.state
            )

        try:
            upstream_tokens = await bridge.upstream.exchange_code(str(request.url))
        except UpstreamError as e:
            logger.error(f"[CALLBACK] QuickBooks token exchange failed: {e}")
            return error_redirect(
                pending.redirect_uri,
                "server_error",
                "Failed to complete QuickBooks authorization",
                pending.state,
            )

        tenant_id = query.get("realmId") or upstream_tokens.tenant_id
        if not tenant_id:
            logger.error("[CALLBACK] QuickBooks did not return a realm id")
            return error_redirect(
                pending.redirect_uri,
                "server_error",
                "QuickBooks did not identify a company",
                pending.state,
            )

        code = secrets.token_hex(32)
        bridge.codes.put(code, AuthorizationCode(
            code=code,
            client_id=pending.client_id,
            redirect_uri=pending.redirect_uri,
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
            scope=pending.scope,
            expires_at=time.time() + AUTHORIZATION_CODE_TTL_SECONDS,
            tenant_id=tenant_id,
            upstream_access_token=upstream_tokens.access_token,
            upstream_refresh_token=upstream_tokens.refresh_token,
        ))
        logger.info(f"[CALLBACK] Issued authorization code to client {pending.client_id}, realm {tenant_id}")

        url = add_query_params(pending.redirect_uri, {"code": code, "state": pending.state})
        return RedirectResponse(url=url, status_code=302)

    # ============== Token Endpoint ==============

    async def _authorization_code_grant(
        params: dict, client_id: Optional[str], client_secret: Optional[str]
    ) -> dict:
        client = bridge.clients.get(client_id)
        if not client:
            raise InvalidClientError("Unknown client")
        _authenticate_client(client, client_secret)

        code = params.get("code")
        if not code:
            raise InvalidRequestError("code is required")

        # Consumed before any other check: a code never survives a failed attempt
        auth_code = bridge.codes.pop(code)
        if auth_code is None:
            raise InvalidGrantError("Invalid or expired authorization code")

        if auth_code.client_id != client.client_id:
            raise InvalidGrantError("Authorization code was not issued to this client")
        if auth_code.redirect_uri != params.get("redirect_uri"):
            raise InvalidGrantError("redirect_uri does not match")

        code_verifier = params.get("code_verifier")
        if not code_verifier:
            raise InvalidRequestError("code_verifier is required")
        if not verify_code_challenge(code_verifier, auth_code.code_challenge, auth_code.code_challenge_method):
            raise InvalidGrantError("Invalid code_verifier")

        pair = bridge.tokens.issue_pair(
            client_id=client.client_id,
            tenant_id=auth_code.tenant_id,
            upstream_access_token=auth_code.upstream_access_token,
            upstream_refresh_token=auth_code.upstream_refresh_token,
            scope=auth_code.scope,
        )
        logger.info(f"[TOKEN] Issued tokens for client {client.client_id}, realm {auth_code.tenant_id}")
        return pair.to_response()

    async def _refresh_token_grant(
        params: dict, client_id: Optional[str], client_secret: Optional[str]
    ) -> dict:
        refresh_token = params.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")

        payload = bridge.tokens.verify_refresh_token(refresh_token)
        if payload is None:
            raise InvalidGrantError("Invalid or expired refresh token")
        if client_id and client_id != payload.client_id:
            raise InvalidGrantError("Refresh token was not issued to this client")

        # Registrations don't survive restarts; tokens do. Only check what we know.
        client = bridge.clients.get(payload.client_id)
        if client is not None:
            _authenticate_client(client, client_secret)

        try:
            upstream_tokens = await bridge.upstream.refresh(payload.upstream_refresh_token)
        except UpstreamRejectedError as e:
            logger.info(f"[TOKEN] QuickBooks refused refresh for client {payload.client_id}: {e}")
            raise InvalidGrantError("Failed to refresh token")
        except UpstreamError as e:
            logger.error(f"[TOKEN] QuickBooks refresh failed for client {payload.client_id}: {e}")
            raise ServerError("Failed to refresh token")

        pair = bridge.tokens.issue_pair(
            client_id=payload.client_id,
            tenant_id=payload.tenant_id,
            upstream_access_token=upstream_tokens.access_token,
            upstream_refresh_token=upstream_tokens.refresh_token,
            scope=payload.scope,
        )
        logger.info(f"[TOKEN] Refreshed tokens for client {payload.client_id}, realm {payload.tenant_id}")
        return pair.to_response()

    grant_handlers = {
        "authorization_code": _authorization_code_grant,
        "refresh_token": _refresh_token_grant,
    }

    @router.post("/token")
    async def token(request: Request):
        """OAuth 2.0 Token Endpoint."""
        try:
            params = await _read_params(request)
            client_id, client_secret = _client_credentials(request, params)
            grant_type = params.get("grant_type")
            logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

            handler = grant_handlers.get(grant_type)
            if handler is None:
                raise UnsupportedGrantTypeError(
                    "Only authorization_code and refresh_token grants are supported"
                )
            body = await handler(params, client_id, client_secret)
        except OAuthError as e:
            logger.info(f"[TOKEN] Rejected: {e.error} ({e.description})")
            return error_response(e)

        return JSONResponse(body, headers=NO_STORE)

    return router
