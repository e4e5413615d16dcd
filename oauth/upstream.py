"""QuickBooks (Intuit) OAuth 2.0 client used by the authorization bridge.

Built once at startup from Config and injected into the endpoints.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from oauth.errors import (
    UpstreamConfigurationError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

INTUIT_AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
INTUIT_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"


@dataclass(frozen=True)
class UpstreamTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    tenant_id: Optional[str] = None


@runtime_checkable
class UpstreamAdapter(Protocol):
    """What the OAuth endpoints need from the upstream authorization server."""

    def build_authorize_url(self, scope: str, state: str) -> str: ...

    async def exchange_code(self, callback_url: str) -> UpstreamTokens: ...

    async def refresh(self, refresh_token: str) -> UpstreamTokens: ...


class IntuitOAuthAdapter:
    """Builds authorize URLs, exchanges codes and refreshes tokens."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        authorize_url: str = INTUIT_AUTHORIZE_URL,
        token_url: str = INTUIT_TOKEN_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.authorize_url = authorize_url
        self.token_url = token_url
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "IntuitOAuthAdapter":
        return cls(
            client_id=config.quickbooks_client_id,
            client_secret=config.quickbooks_client_secret,
            redirect_uri=config.callback_url,
            timeout=config.upstream_timeout,
        )

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise UpstreamConfigurationError("QUICKBOOKS_CLIENT_ID and QUICKBOOKS_CLIENT_SECRET are not set")

    def build_authorize_url(self, scope: str, state: str) -> str:
        """Local, non-blocking: the URL the user agent is sent to."""
        self._require_credentials()
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": scope,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, callback_url: str) -> UpstreamTokens:
        """Exchange the code carried by the callback URL for tokens.

        The realm id (tenant) comes from the callback's ``realmId``.
        """
        self._require_credentials()
        query = parse_qs(urlsplit(callback_url).query)
        code = query.get("code", [None])[0]
        if not code:
            raise UpstreamRejectedError("Callback URL carries no authorization code")

        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        logger.info("[UPSTREAM] Exchanged authorization code for QuickBooks tokens")
        return self._parse_tokens(data, tenant_id=query.get("realmId", [None])[0])

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        self._require_credentials()
        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        logger.info("[UPSTREAM] Refreshed QuickBooks tokens")
        return self._parse_tokens(data)

    async def _token_request(self, form: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"[UPSTREAM] Token request failed: {type(e).__name__}")
            raise UpstreamUnavailableError(f"QuickBooks token endpoint unreachable: {type(e).__name__}") from e

        if response.status_code >= 500:
            logger.warning(f"[UPSTREAM] Token endpoint returned {response.status_code}")
            raise UpstreamUnavailableError(f"QuickBooks token endpoint returned {response.status_code}")
        if response.status_code != 200:
            error = _error_code(response)
            logger.warning(f"[UPSTREAM] Token request rejected: {response.status_code} {error}")
            raise UpstreamRejectedError(f"QuickBooks rejected the token request: {error}")

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError("QuickBooks token endpoint returned invalid JSON") from e

    @staticmethod
    def _parse_tokens(data: dict, tenant_id: Optional[str] = None) -> UpstreamTokens:
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise UpstreamUnavailableError("QuickBooks token response is missing tokens")
        return UpstreamTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(data.get("expires_in") or 3600),
            tenant_id=tenant_id or data.get("realmId"),
        )


def _error_code(response: httpx.Response) -> str:
    try:
        return response.json().get("error", "unknown_error")
    except (ValueError, AttributeError):
        return "unknown_error"
