"""Dynamic Client Registration (RFC 7591) validation."""

import logging
import secrets
import time
import uuid
from typing import Any
from urllib.parse import urlsplit

from oauth.errors import InvalidClientMetadataError, InvalidRedirectUriError
from oauth.stores import ClientRegistration, ClientRegistry

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("localhost", "127.0.0.1")
SUPPORTED_AUTH_METHODS = ("none", "client_secret_post", "client_secret_basic")
DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]


def validate_redirect_uri(uri: Any) -> None:
    """Accept loopback http(s) URLs and https URLs; reject everything else.

    Raises:
        InvalidRedirectUriError: naming the offending URI.
    """
    if not isinstance(uri, str) or not uri:
        raise InvalidRedirectUriError(f"Invalid redirect URI: {uri!r}")

    try:
        parts = urlsplit(uri)
        hostname = parts.hostname
    except ValueError:
        raise InvalidRedirectUriError(f"Invalid redirect URI: {uri}")

    if not parts.scheme or not hostname:
        raise InvalidRedirectUriError(f"Invalid redirect URI: {uri}")
    if parts.fragment:
        raise InvalidRedirectUriError(f"Redirect URI must not contain a fragment: {uri}")

    is_loopback = hostname in LOOPBACK_HOSTS and parts.scheme in ("http", "https")
    if not is_loopback and parts.scheme != "https":
        raise InvalidRedirectUriError("Redirect URIs must be localhost URLs or HTTPS URLs")


def _string_list(data: dict, key: str, default: list) -> list:
    value = data.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidClientMetadataError(f"{key} must be an array of strings")
    return value


def register_client(registry: ClientRegistry, metadata: Any) -> ClientRegistration:
    """Validate client metadata, create the registration and store it."""
    if not isinstance(metadata, dict):
        raise InvalidClientMetadataError("Registration request must be a JSON object")

    redirect_uris = metadata.get("redirect_uris")
    if not redirect_uris or not isinstance(redirect_uris, list):
        raise InvalidClientMetadataError("redirect_uris is required and must be a non-empty array")
    for uri in redirect_uris:
        validate_redirect_uri(uri)

    auth_method = metadata.get("token_endpoint_auth_method") or "none"
    if auth_method not in SUPPORTED_AUTH_METHODS:
        raise InvalidClientMetadataError(f"Unsupported token_endpoint_auth_method: {auth_method}")

    grant_types = _string_list(metadata, "grant_types", DEFAULT_GRANT_TYPES)
    response_types = _string_list(metadata, "response_types", DEFAULT_RESPONSE_TYPES)

    client_name = metadata.get("client_name")
    if client_name is not None and not isinstance(client_name, str):
        raise InvalidClientMetadataError("client_name must be a string")

    client_id = str(uuid.uuid4())
    client_secret = secrets.token_hex(32) if auth_method != "none" else None

    client = ClientRegistration(
        client_id=client_id,
        client_secret=client_secret,
        client_name=client_name or f"MCP Client {client_id[:8]}",
        redirect_uris=list(redirect_uris),
        grant_types=grant_types,
        response_types=response_types,
        token_endpoint_auth_method=auth_method,
        created_at=int(time.time()),
    )
    registry.add(client)
    logger.info(f"[REGISTER] Registered client: {client_id} ({client.client_name}, auth={auth_method})")
    return client
