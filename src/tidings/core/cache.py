"""Read-mostly TTL caches for provider credentials and the correction dictionary.

Values are rebuilt by the loader and swapped in whole; a cached value is never
mutated in place, so readers on other threads always see a complete snapshot.
"""

import base64
import binascii
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheConfig:
    """TTLs for the process-wide caches."""
    credentials_ttl: float = 300.0
    dictionary_ttl: float = 600.0


def get_cache_config() -> CacheConfig:
    """Get cache configuration from environment."""
    return CacheConfig(
        credentials_ttl=float(os.getenv("CREDENTIALS_CACHE_TTL", "300")),
        dictionary_ttl=float(os.getenv("DICTIONARY_CACHE_TTL", "600")),
    )


class TTLCache(Generic[T]):
    """Single-value cache with bounded staleness and explicit refresh."""

    def __init__(
        self,
        loader: Callable[[], T],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self.loader = loader
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.name = name
        self.last_refreshed: Optional[float] = None
        self._value: Any = _MISSING
        self._lock = threading.Lock()

    def is_stale(self) -> bool:
        if self._value is _MISSING or self.last_refreshed is None:
            return True
        return self.clock() - self.last_refreshed >= self.ttl_seconds

    def get(self) -> T:
        """Return the cached value, loading it first if missing or expired."""
        if self.is_stale():
            return self.refresh()
        return self._value

    def refresh(self) -> T:
        """Reload the value now and replace the cached snapshot.

        If the loader fails and an older snapshot exists, the old snapshot keeps
        being served until the next attempt; with nothing cached the error
        propagates.
        """
        with self._lock:
            try:
                value = self.loader()
            except Exception as e:
                if self._value is _MISSING:
                    raise
                logger.warning(f"Refreshing {self.name} failed, serving previous value: {e}")
                self.last_refreshed = self.clock()
                return self._value
            self._value = value
            self.last_refreshed = self.clock()
            logger.debug(f"Refreshed {self.name}")
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._value = _MISSING
            self.last_refreshed = None


class CredentialStore:
    """Resolve provider API keys from the database with an environment fallback."""

    ENV_KEYS: Dict[str, Tuple[str, ...]] = {
        "openai": ("OPENAI_API_KEY",),
        "gemini": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
        "claude": ("ANTHROPIC_API_KEY",),
    }

    def __init__(
        self,
        loader: Optional[Callable[[], List[Dict[str, Any]]]] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is None:
            ttl_seconds = get_cache_config().credentials_ttl
        self._cache: TTLCache[Dict[str, str]] = TTLCache(
            lambda: self._build_snapshot(loader),
            ttl_seconds,
            clock=clock,
            name="credentials",
        )

    @staticmethod
    def _build_snapshot(loader: Optional[Callable[[], List[Dict[str, Any]]]]) -> Dict[str, str]:
        snapshot: Dict[str, str] = {}
        if loader is None:
            return snapshot

        rows = sorted(loader(), key=lambda row: row.get("priority") or 0)
        for row in rows:
            provider = row["provider"]
            if provider in snapshot or not row.get("is_active", True):
                continue
            try:
                snapshot[provider] = base64.b64decode(row["api_key"], validate=True).decode("utf-8").strip()
            except (binascii.Error, UnicodeDecodeError, ValueError) as e:
                logger.warning(f"Skipping undecodable API key for {provider}: {e}")
        return snapshot

    @property
    def last_refreshed(self) -> Optional[float]:
        return self._cache.last_refreshed

    def refresh(self) -> None:
        self._cache.refresh()

    def get_key(self, provider: str) -> Optional[str]:
        """Return the active key for a provider, or None when none is configured."""
        key = self._cache.get().get(provider)
        if key:
            return key
        for env_name in self.ENV_KEYS.get(provider, ()):
            value = os.getenv(env_name)
            if value:
                return value
        return None

    def configured_providers(self, order: List[str]) -> List[str]:
        return [name for name in order if self.get_key(name)]
