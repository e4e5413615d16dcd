"""In-memory stores for the OAuth flow.

These stores are shared between the OAuth endpoints and injected into them.
Note: access tokens and refresh tokens are encrypted and self-describing
(stateless) and don't require storage - they're validated by decryption.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

PENDING_AUTHORIZATION_TTL_SECONDS = 600  # 10 minutes
AUTHORIZATION_CODE_TTL_SECONDS = 600  # 10 minutes


@dataclass(frozen=True)
class ClientRegistration:
    """A dynamically registered OAuth client (RFC 7591)."""
    client_id: str
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str
    created_at: int
    client_secret: Optional[str] = None

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"

    def to_response(self) -> dict:
        body = {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "response_types": list(self.response_types),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "client_id_issued_at": self.created_at,
        }
        if self.client_secret is not None:
            body["client_secret"] = self.client_secret
            body["client_secret_expires_at"] = 0
        return body


@dataclass(frozen=True)
class PendingAuthorization:
    """Client request parked while the user is at QuickBooks."""
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    expires_at: float
    state: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationCode:
    """Single-use code binding a client request to upstream credentials."""
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    expires_at: float
    tenant_id: str
    upstream_access_token: str
    upstream_refresh_token: str
    scope: Optional[str] = None


T = TypeVar("T")


class TTLStore(Generic[T]):
    """Lock-guarded map whose entries expire.

    Every value must have an ``expires_at`` attribute (epoch seconds).
    Expired entries are invisible to get() and pop() even before the
    reaper removes them.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.time):
        self.name = name
        self._clock = clock
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            value = self._items.get(key)
            if value is None or self._is_expired(value):
                return None
            return value

    def pop(self, key: str) -> Optional[T]:
        """Remove and return the entry; only one concurrent caller can win."""
        with self._lock:
            value = self._items.pop(key, None)
        if value is None or self._is_expired(value):
            return None
        return value

    def purge_expired(self) -> int:
        with self._lock:
            expired = [k for k, v in self._items.items() if self._is_expired(v)]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _is_expired(self, value: T) -> bool:
        return self._clock() >= value.expires_at


class ClientRegistry:
    """Registered clients; lives for the process lifetime.

    There is no automatic eviction. Operators can call evict().
    """

    def __init__(self):
        self._clients: Dict[str, ClientRegistration] = {}
        self._lock = threading.Lock()

    def add(self, client: ClientRegistration) -> None:
        with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"client_id already registered: {client.client_id}")
            self._clients[client.client_id] = client

    def get(self, client_id: Optional[str]) -> Optional[ClientRegistration]:
        if not client_id:
            return None
        with self._lock:
            return self._clients.get(client_id)

    def evict(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


class StoreReaper:
    """Background thread that purges expired entries periodically."""

    def __init__(self, stores: Iterable[TTLStore], interval: float = 60.0):
        self.stores = list(stores)
        self.interval = interval
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._worker, name="store-reaper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._shutdown.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def reap_once(self) -> int:
        removed = 0
        for store in self.stores:
            count = store.purge_expired()
            if count:
                logger.debug(f"[REAPER] Removed {count} expired entries from {store.name}")
            removed += count
        return removed

    def _worker(self) -> None:
        while not self._shutdown.wait(self.interval):
            try:
                self.reap_once()
            except Exception:
                logger.exception("[REAPER] Purge failed")
