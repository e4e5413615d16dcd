import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from oauth.codec import TokenCodec
from oauth.endpoints import OAuthBridge, create_oauth_router
from oauth.middleware import MCPOAuthMiddleware, get_current_credentials
from oauth.stores import ClientRegistry, TTLStore
from oauth.tokens import TokenIssuer
from tests.helpers import TEST_ISSUER, TEST_KEY, FakeUpstream


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_KEY)


@pytest.fixture
def token_issuer(codec) -> TokenIssuer:
    return TokenIssuer(codec, default_scope="com.intuit.quickbooks.accounting")


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def bridge(token_issuer, upstream) -> OAuthBridge:
    return OAuthBridge(
        issuer=TEST_ISSUER,
        clients=ClientRegistry(),
        pending=TTLStore("pending_authorizations"),
        codes=TTLStore("authorization_codes"),
        tokens=token_issuer,
        upstream=upstream,
    )


async def _whoami(request: Request) -> JSONResponse:
    credentials = get_current_credentials()
    return JSONResponse({
        "realm_id": credentials.realm_id,
        "access_token": credentials.access_token,
        "client_id": credentials.client_id,
    })


@pytest.fixture
def app(bridge) -> FastAPI:
    app = FastAPI()
    protected = Starlette(
        routes=[Route("/", _whoami)],
        middleware=[
            Middleware(
                MCPOAuthMiddleware,
                tokens=bridge.tokens,
                resource_metadata_url=bridge.resource_metadata_url,
            )
        ],
    )
    app.mount("/mcp", protected)
    app.include_router(create_oauth_router(bridge))
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
