"""Shared test doubles and flow helpers."""

import base64
import hashlib
import secrets
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from oauth.errors import UpstreamError
from oauth.upstream import UpstreamTokens

TEST_ISSUER = "https://mcp.example.com"
LOOPBACK_REDIRECT = "http://localhost:4000/cb"
TEST_KEY = bytes(range(32))


class FakeUpstream:
    """Stands in for IntuitOAuthAdapter."""

    def __init__(self):
        self.exchanged = []
        self.refreshed = []
        self.exchange_error: Optional[UpstreamError] = None
        self.refresh_error: Optional[UpstreamError] = None
        self._refresh_count = 0

    def build_authorize_url(self, scope: str, state: str) -> str:
        return f"https://appcenter.intuit.test/connect/oauth2?{urlencode({'scope': scope, 'state': state})}"

    async def exchange_code(self, callback_url: str) -> UpstreamTokens:
        self.exchanged.append(callback_url)
        if self.exchange_error:
            raise self.exchange_error
        return UpstreamTokens(access_token="qb-access-1", refresh_token="qb-refresh-1", expires_in=3600)

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        self.refreshed.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        self._refresh_count += 1
        return UpstreamTokens(
            access_token=f"qb-access-r{self._refresh_count}",
            refresh_token=f"qb-refresh-r{self._refresh_count}",
            expires_in=3600,
        )


def make_pkce_pair():
    verifier = secrets.token_urlsafe(48)
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).decode("ascii").rstrip("=")
    return verifier, challenge


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def register(client, redirect_uris=None, **metadata) -> dict:
    body = {"redirect_uris": redirect_uris or [LOOPBACK_REDIRECT], **metadata}
    response = client.post("/register", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def authorize(client, client_id: str, challenge: str, redirect_uri: str = LOOPBACK_REDIRECT,
              state: str = "client-state", method: str = "S256"):
    return client.get("/authorize", params={
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": method,
        "scope": "com.intuit.quickbooks.accounting",
    }, follow_redirects=False)


def obtain_code(client, client_id: str, challenge: str, redirect_uri: str = LOOPBACK_REDIRECT,
                state: str = "client-state", method: str = "S256") -> str:
    """Run /authorize and a simulated QuickBooks /callback; return the bridge code."""
    response = authorize(client, client_id, challenge, redirect_uri, state, method)
    assert response.status_code == 302, response.text
    internal_state = query_of(response.headers["location"])["state"]

    callback = client.get("/callback", params={
        "code": "upstream-code",
        "state": internal_state,
        "realmId": "9130350000000001",
    }, follow_redirects=False)
    assert callback.status_code == 302, callback.text
    return query_of(callback.headers["location"])["code"]


def exchange(client, client_id: str, code: str, verifier: str, redirect_uri: str = LOOPBACK_REDIRECT, **extra):
    return client.post("/token", data={
        "grant_type": "authorization_code",
        "client_id": client_id,
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": verifier,
        **extra,
    })
