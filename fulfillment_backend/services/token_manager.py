"""
Shiprocket token management

The carrier issues a bearer token from an email/password login. Tokens are
cached at two tiers:
- in-process (TokenStore), consulted first
- a persistent key-value slot shared by every worker, with its own TTL

A token is only used while now < expires_at - 5 minutes. Resolution and
refresh run under one asyncio.Lock so concurrent callers trigger a single
login.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from fulfillment_backend.core.config import ShippingConfig
from fulfillment_backend.core.exceptions import AuthenticationError
from fulfillment_backend.core.redis_client import KeyValueStore
from fulfillment_backend.core.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_SLOT_KEY = "shiprocket:token"

# 20 hours, used when the login response omits expires_in
DEFAULT_EXPIRES_IN_SECONDS = 72000

EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class CachedToken:
    """Bearer token with its absolute expiry."""
    token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return bool(self.token) and now < self.expires_at - EXPIRY_BUFFER

    def to_json(self) -> str:
        return json.dumps({"token": self.token, "expires_at": self.expires_at.isoformat()})

    @classmethod
    def from_json(cls, raw: str) -> Optional["CachedToken"]:
        try:
            data = json.loads(raw)
            return cls(token=data["token"], expires_at=datetime.fromisoformat(data["expires_at"]))
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable persisted token: {e}")
            return None


class TokenStore:
    """In-process token holder."""

    def __init__(self):
        self._token: Optional[CachedToken] = None

    def get(self) -> Optional[CachedToken]:
        return self._token

    def set(self, token: CachedToken) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class TokenManager:
    """
    Acquires and caches the Shiprocket bearer token.

    Usage:
        manager = TokenManager(config, kv_store)
        token = await manager.authenticate()
        ...
        token = await manager.force_refresh(rejected_token=token)
    """

    def __init__(
        self,
        config: ShippingConfig,
        kv_store: KeyValueStore,
        token_store: Optional[TokenStore] = None,
        clock: Callable[[], datetime] = utcnow,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._kv_store = kv_store
        self._token_store = token_store or TokenStore()
        self._clock = clock
        self._http_client = http_client
        self._owns_client = http_client is None
        self._lock = asyncio.Lock()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client if this manager created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def authenticate(self) -> str:
        """
        Return a usable bearer token.

        Order of resolution: in-process token, persistent slot, fresh login.

        Raises:
            AuthenticationError: credentials missing, login rejected or unreachable
        """
        cached = self._token_store.get()
        if cached and cached.is_valid(self._clock()):
            return cached.token

        async with self._lock:
            now = self._clock()
            cached = self._token_store.get()
            if cached and cached.is_valid(now):
                return cached.token

            persisted = await self._read_persisted()
            if persisted and persisted.is_valid(now):
                logger.debug("Adopted Shiprocket token from persistent slot")
                self._token_store.set(persisted)
                return persisted.token

            return await self._login()

    async def force_refresh(self, rejected_token: Optional[str] = None) -> str:
        """
        Drop cached tokens and log in again.

        When rejected_token is given and another caller has already replaced
        it with a valid token, that token is returned without a new login.
        """
        async with self._lock:
            cached = self._token_store.get()
            if (
                rejected_token is not None
                and cached is not None
                and cached.token != rejected_token
                and cached.is_valid(self._clock())
            ):
                logger.debug("Token already refreshed by a concurrent caller")
                return cached.token

            self._token_store.clear()
            try:
                await self._kv_store.clear(TOKEN_SLOT_KEY)
            except Exception as e:
                logger.warning(f"Failed to clear persisted Shiprocket token: {e}")

            return await self._login()

    async def _read_persisted(self) -> Optional[CachedToken]:
        try:
            raw = await self._kv_store.get(TOKEN_SLOT_KEY)
        except Exception as e:
            logger.warning(f"Failed to read persisted Shiprocket token: {e}")
            return None
        if not raw:
            return None
        return CachedToken.from_json(raw)

    async def _login(self) -> str:
        if not self.config.has_credentials:
            raise AuthenticationError(
                "Shiprocket credentials missing. Set SHIPROCKET_EMAIL and SHIPROCKET_PASSWORD.",
                code="MISSING_CREDENTIALS",
            )

        client = await self._get_http_client()
        try:
            response = await client.post(
                self.config.auth_url,
                json={"email": self.config.email, "password": self.config.password},
                timeout=self.config.timeout_seconds,
            )
        except httpx.RequestError as e:
            logger.error(f"Shiprocket auth request failed: {e}")
            raise AuthenticationError(f"Network error during authentication: {e}")

        if response.status_code != 200:
            logger.error(f"Shiprocket auth failed: {response.status_code} - {response.text[:500]}")
            raise AuthenticationError(
                "Failed to authenticate with Shiprocket",
                details={"status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            raise AuthenticationError("Shiprocket auth response was not JSON")

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("Shiprocket auth response missing token")

        try:
            expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS

        cached = CachedToken(token=token, expires_at=self._clock() + timedelta(seconds=expires_in))
        self._token_store.set(cached)

        try:
            await self._kv_store.put(TOKEN_SLOT_KEY, cached.to_json(), expires_in)
        except Exception as e:
            logger.warning(f"Failed to persist Shiprocket token: {e}")

        logger.info(f"Shiprocket token obtained, expires in {expires_in}s")
        return token
