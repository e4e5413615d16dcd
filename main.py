"""QuickBooks MCP Server.

It handles:
- MCP tools (QuickBooks reads) via tools.py
- MCP protocol endpoint via Streamable HTTP (/mcp), guarded by bearer tokens
- The OAuth 2.1 authorization bridge for MCP clients (oauth/): dynamic
  client registration, PKCE authorization code flow through QuickBooks, and
  stateless encrypted tokens
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware import Middleware

from config import Config, load_config
from logging_config import setup_logging
from oauth.codec import TokenCodec, load_or_create_key
from oauth.endpoints import OAuthBridge, create_oauth_router
from oauth.middleware import MCPOAuthMiddleware
from oauth.stores import ClientRegistry, StoreReaper, TTLStore
from oauth.tokens import TokenIssuer
from oauth.upstream import ACCOUNTING_SCOPE, IntuitOAuthAdapter, UpstreamAdapter

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def build_bridge(config: Config, upstream: UpstreamAdapter = None, codec: TokenCodec = None) -> OAuthBridge:
    """Wire the OAuth bridge from config. Collaborators can be injected (tests)."""
    if codec is None:
        codec = TokenCodec(load_or_create_key(config.token_encryption_key, config.token_key_file))
    if upstream is None:
        upstream = IntuitOAuthAdapter.from_config(config)

    return OAuthBridge(
        issuer=config.issuer,
        clients=ClientRegistry(),
        pending=TTLStore("pending_authorizations"),
        codes=TTLStore("authorization_codes"),
        tokens=TokenIssuer(codec, default_scope=ACCOUNTING_SCOPE),
        upstream=upstream,
    )


def create_app(config: Config, bridge: OAuthBridge = None) -> FastAPI:
    """Create the FastAPI app with the OAuth routes and the protected MCP app."""
    # MCP tools imported from tools.py
    from tools import init_tools, mcp

    init_tools(config.quickbooks_environment)
    bridge = bridge or build_bridge(config)
    reaper = StoreReaper([bridge.pending, bridge.codes], interval=config.reap_interval)

    # ============== Streamable HTTP MCP App ==============
    # Create FastMCP app with OAuth middleware BEFORE FastAPI app
    # (We need the lifespan from mcp_http_app for FastAPI)
    mcp_http_app = mcp.http_app(
        path="/",  # Route at root of mounted app
        transport="streamable-http",
        middleware=[
            Middleware(
                MCPOAuthMiddleware,
                tokens=bridge.tokens,
                resource_metadata_url=bridge.resource_metadata_url,
            )
        ],
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper.start()
        try:
            # Required for FastMCP task group initialization
            async with mcp_http_app.lifespan(app):
                yield
        finally:
            reaper.stop()

    app = FastAPI(
        title="QuickBooks MCP Server",
        description="MCP server for QuickBooks Online with an OAuth 2.1 authorization bridge",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.oauth_bridge = bridge

    # Add CORS middleware for browser-based MCP client access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    app.mount("/mcp", mcp_http_app)
    app.include_router(create_oauth_router(bridge))

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "server": "quickbooks-mcp-server"}

    @app.get("/")
    async def root():
        return {
            "name": "QuickBooks MCP Server",
            "version": VERSION,
            "endpoints": {"streamable_http": "/mcp"},
            "oauth": {
                "protected_resource": bridge.resource_metadata_url,
                "authorization_server": f"{bridge.issuer}/.well-known/oauth-authorization-server",
            },
        }

    return app


def main() -> None:
    import uvicorn

    # Load environment: .env (local override) if present
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    config = load_config()
    setup_logging(config.log_level, config.log_format)

    logger.info(f"[STARTUP] OAuth issuer: {config.issuer}")
    logger.info(f"[STARTUP] QuickBooks environment: {config.quickbooks_environment}")
    if not config.has_upstream_credentials():
        logger.warning("[STARTUP] QUICKBOOKS_CLIENT_ID and QUICKBOOKS_CLIENT_SECRET not set.")
        logger.warning("[STARTUP] The OAuth flow (/authorize, /token refresh) will fail; existing tokens still validate.")

    app = create_app(config)
    logger.info(f"[STARTUP] OAuth metadata: {config.issuer}/.well-known/oauth-authorization-server")
    logger.info(f"[STARTUP] MCP endpoint: {config.issuer}/mcp")
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
