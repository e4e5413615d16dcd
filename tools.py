"""MCP Tools for quickbooks-mcp-server.

This module defines the MCP tools that are exposed to clients. Each tool
calls the QuickBooks Online API with the credentials that MCPOAuthMiddleware
recovered from the caller's bearer token.
"""

import logging
from typing import Optional

import httpx
from fastmcp import FastMCP

from oauth.middleware import QuickBooksCredentials, get_current_credentials

logger = logging.getLogger(__name__)

QUICKBOOKS_SANDBOX_BASE_URL = "https://sandbox-quickbooks.api.intuit.com"
QUICKBOOKS_PRODUCTION_BASE_URL = "https://quickbooks.api.intuit.com"
MINOR_VERSION = "75"

# Create the FastMCP server instance
mcp = FastMCP("quickbooks-mcp-server")

# Set by init_tools() from Config
_environment: str = "sandbox"


def init_tools(environment: str) -> None:
    """Initialize tools with the configured QuickBooks environment."""
    global _environment
    _environment = environment


class QuickBooksAPIError(Exception):
    """QuickBooks API call failed."""


def api_base_url(environment: Optional[str] = None) -> str:
    environment = environment or _environment
    if environment == "production":
        return QUICKBOOKS_PRODUCTION_BASE_URL
    return QUICKBOOKS_SANDBOX_BASE_URL


def _format_fault(response: httpx.Response) -> str:
    """Readable message from a QuickBooks Fault body."""
    try:
        fault = response.json().get("Fault", {})
        first = fault.get("Error", [{}])[0]
        return f"{first.get('Message', 'Unknown error')}: {first.get('Detail', '')}"
    except (ValueError, AttributeError, IndexError):
        return f"HTTP {response.status_code}"


async def qbo_get(
    path: str,
    params: Optional[dict] = None,
    credentials: Optional[QuickBooksCredentials] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """GET a company-scoped QuickBooks resource.

    Args:
        path: Path below /v3/company/<realm>/, e.g. "query".
        params: Extra query parameters.
        credentials: Defaults to the credentials of the current request.
        transport: Optional httpx transport (tests).
    """
    credentials = credentials or get_current_credentials()
    if credentials is None:
        raise QuickBooksAPIError("Not authenticated with QuickBooks")

    url = f"{api_base_url()}/v3/company/{credentials.realm_id}/{path.lstrip('/')}"
    query = {"minorversion": MINOR_VERSION, **(params or {})}

    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        response = await client.get(
            url,
            params=query,
            headers={
                "Authorization": f"Bearer {credentials.access_token}",
                "Accept": "application/json",
            },
        )

    if response.status_code != 200:
        message = _format_fault(response)
        logger.warning(f"[TOOL] QuickBooks request to {path} failed: {message}")
        raise QuickBooksAPIError(message)
    return response.json()


@mcp.tool()
async def get_company_info() -> dict:
    """Get the QuickBooks company profile for the connected realm.

    Returns:
        The CompanyInfo object
    """
    credentials = get_current_credentials()
    if credentials is None:
        raise QuickBooksAPIError("Not authenticated with QuickBooks")
    logger.info("[TOOL] get_company_info invoked")
    data = await qbo_get(f"companyinfo/{credentials.realm_id}", credentials=credentials)
    return data.get("CompanyInfo", data)


@mcp.tool()
async def query(statement: str) -> dict:
    """Run a QuickBooks query, e.g. "SELECT * FROM Customer MAXRESULTS 20".

    Args:
        statement: QuickBooks SQL-like query statement

    Returns:
        The QueryResponse object
    """
    logger.info(f"[TOOL] query invoked, statement length: {len(statement)}")
    data = await qbo_get("query", params={"query": statement})
    return data.get("QueryResponse", data)
