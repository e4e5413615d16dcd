"""Config management for quickbooks-mcp-server."""
import os
from pathlib import Path
from typing import Optional


CONFIG_DIR = Path.home() / ".quickbooks-mcp-server"
TOKEN_KEY_FILE = CONFIG_DIR / "token_key"

DEFAULT_ISSUER = "http://localhost:8000"


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    @property
    def issuer(self) -> str:
        return self.data.get("issuer", DEFAULT_ISSUER).rstrip("/")

    @property
    def quickbooks_client_id(self) -> str:
        return self.data.get("quickbooks_client_id", "")

    @property
    def quickbooks_client_secret(self) -> str:
        return self.data.get("quickbooks_client_secret", "")

    @property
    def quickbooks_environment(self) -> str:
        return self.data.get("quickbooks_environment", "sandbox")

    @property
    def token_encryption_key(self) -> Optional[str]:
        return self.data.get("token_encryption_key") or None

    @property
    def token_key_file(self) -> Path:
        return Path(self.data.get("token_key_file", TOKEN_KEY_FILE))

    @property
    def host(self) -> str:
        return self.data.get("host", "0.0.0.0")

    @property
    def port(self) -> int:
        return int(self.data.get("port", 8000))

    @property
    def upstream_timeout(self) -> float:
        return float(self.data.get("upstream_timeout", 10.0))

    @property
    def reap_interval(self) -> float:
        return float(self.data.get("reap_interval", 60.0))

    @property
    def log_level(self) -> str:
        return self.data.get("log_level", "INFO").upper()

    @property
    def log_format(self) -> str:
        return self.data.get("log_format", "plain").lower()

    @property
    def callback_url(self) -> str:
        return f"{self.issuer}/callback"

    def has_upstream_credentials(self) -> bool:
        """Check if the QuickBooks app credentials are configured."""
        return bool(self.quickbooks_client_id and self.quickbooks_client_secret)


_ENV_KEYS = {
    "issuer": "OAUTH_ISSUER",
    "quickbooks_client_id": "QUICKBOOKS_CLIENT_ID",
    "quickbooks_client_secret": "QUICKBOOKS_CLIENT_SECRET",
    "quickbooks_environment": "QUICKBOOKS_ENVIRONMENT",
    "token_encryption_key": "TOKEN_ENCRYPTION_KEY",
    "token_key_file": "TOKEN_KEY_FILE",
    "host": "MCP_HOST",
    "port": "MCP_PORT",
    "upstream_timeout": "UPSTREAM_TIMEOUT_SECONDS",
    "reap_interval": "STORE_REAP_INTERVAL_SECONDS",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
}


def load_config() -> Config:
    """Load config from environment variables.

    Unset variables fall back to the defaults on Config.
    """
    data = {}
    for key, env_name in _ENV_KEYS.items():
        value = os.getenv(env_name)
        if value:
            data[key] = value

    return Config(data)
