"""
Session Store

A thin key-value abstraction over the persistent, per-browser storage that holds the OAuth
handshake material and the access token. Nothing else in the package talks to Redis (or
any other backend) directly, so key naming and storage format have a single point of
control.

The store enforces presence and absence only. Callers are responsible for clearing keys
that belong together (state and verifier) in the same step.
"""

from abc import ABC, abstractmethod
import logging
import time
from typing import Dict, Final, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
import redis.asyncio as redis

logger = logging.getLogger(__name__)

STATE_KEY: Final = "oauth:state"
"""Anti-CSRF state nonce of the login flow in flight"""

PKCE_VERIFIER_KEY: Final = "oauth:pkce_code_verifier"
"""PKCE verifier of the login flow in flight"""

ACCESS_TOKEN_KEY: Final = "access_token"
"""Bearer token returned by the token endpoint"""

RETURN_TO_HOSTED_KEY: Final = "return-to-hosted-on-logout"
"""Present when the visitor entered from the hosted site and should return there on logout"""

NEXT_KEY: Final = "next"
"""Path to restore after a forced login"""


class SessionStore(ABC):
    """
    Abstract key-value session store.

    Values are plain strings. A missing or expired key reads as ``None``. ``ttl`` is in
    seconds; without it the store's default lifetime applies.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        pass


class MemorySessionStore(SessionStore):
    """Dictionary backed store for tests and single process use."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})
        self.expires_at: Dict[str, float] = {}

    async def get(self, key: str) -> Optional[str]:
        expires_at = self.expires_at.get(key)
        if expires_at is not None and expires_at <= time.monotonic():
            await self.remove(key)
        return self.values.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.values[key] = value
        if ttl is None:
            self.expires_at.pop(key, None)
        else:
            self.expires_at[key] = time.monotonic() + ttl

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)
        self.expires_at.pop(key, None)


class RedisSessionStore(SessionStore):
    """
    Redis backed store scoped to a single browser.

    Every key is stored as ``<scope>:<key>`` where the scope is built from the configured
    namespace and the browser id, e.g. ``ibremote:3f9c...:access_token``. Every entry
    expires: after its own ``ttl`` when one is given, else after ``default_ttl``. A
    browser that never comes back leaves nothing behind.
    """

    def __init__(self, redis_client: redis.Redis, scope: str, default_ttl: int) -> None:
        self._redis = redis_client
        self._scope = scope
        self._default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self._scope}:{key}"

    async def get(self, key: str) -> Optional[str]:
        value: Union[str, bytes, None] = await self._redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._redis.set(
            self._key(key), value, ex=ttl if ttl is not None else self._default_ttl
        )

    async def remove(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class EncryptedSessionStore(SessionStore):
    """
    Store wrapper that encrypts values at rest with Fernet.

    A value that cannot be decrypted (rotated key, tampered entry, plaintext written
    before encryption was enabled) is removed and reported as absent, which sends the
    visitor through a fresh login.
    """

    def __init__(self, inner: SessionStore, encryption_key: Fernet) -> None:
        self._inner = inner
        self._encryption_key = encryption_key

    async def get(self, key: str) -> Optional[str]:
        encrypted = await self._inner.get(key)
        if encrypted is None:
            return None
        try:
            return self._encryption_key.decrypt(encrypted.encode("ascii")).decode(
                "utf-8"
            )
        except (InvalidToken, UnicodeEncodeError):
            logger.warning("Discarding undecryptable session value for key %s", key)
            await self._inner.remove(key)
            return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        encrypted = self._encryption_key.encrypt(value.encode("utf-8"))
        await self._inner.set(key, encrypted.decode("ascii"), ttl)

    async def remove(self, key: str) -> None:
        await self._inner.remove(key)
