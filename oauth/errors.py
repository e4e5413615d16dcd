"""OAuth 2.1 error taxonomy.

Endpoint handlers raise these; the router renders them either as a JSON
body or, when the client's redirect URI is already known, as query
parameters on a redirect back to the client.
"""

from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi.responses import JSONResponse, RedirectResponse


class OAuthError(Exception):
    """Base exception for protocol-level OAuth failures."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str = ""):
        self.description = description
        super().__init__(f"{self.error}: {description}")

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidClientError(OAuthError):
    error = "invalid_client"
    status_code = 401


class UnknownClientError(InvalidClientError):
    """Unknown client_id at the authorization endpoint (no client auth happened)."""

    status_code = 400


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class InvalidRedirectUriError(OAuthError):
    error = "invalid_redirect_uri"


class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


class UpstreamError(Exception):
    """Raised when the QuickBooks OAuth server cannot complete a request."""


class UpstreamConfigurationError(UpstreamError):
    """QuickBooks app credentials are missing."""


class UpstreamRejectedError(UpstreamError):
    """QuickBooks answered with a 4xx (bad code, revoked refresh token, ...)."""


class UpstreamUnavailableError(UpstreamError):
    """Network failure, timeout or 5xx from QuickBooks."""


def error_response(err: OAuthError) -> JSONResponse:
    """Render an OAuthError as the standard JSON error body."""
    headers = {"Cache-Control": "no-store"}
    if err.status_code == 401:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(err.to_dict(), status_code=err.status_code, headers=headers)


def add_query_params(url: str, params: dict) -> str:
    """Append params to url, keeping any query the URL already has."""
    parts = urlsplit(url)
    extra = urlencode({k: v for k, v in params.items() if v})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def error_redirect(
    redirect_uri: str,
    error: str,
    description: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    """Redirect back to the client with error details in the query string."""
    params = {"error": error, "error_description": description, "state": state}
    return RedirectResponse(url=add_query_params(redirect_uri, params), status_code=302)
