"""In-process cache of license validation results.

Entries are keyed by ``license_validation_{thumbprint}_{digest}``, where
the thumbprint is that of the key the signature is checked against and the
digest covers both the license data and its signature.  Entries expire on
a fixed TTL.  There is no invalidation API: an entry lives
until its TTL passes or it is evicted to respect ``max_entries``.

Results are stored and returned as deep copies so a caller mutating the
result it received can never alter what later callers see.
"""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from licensor.crypto import compute_checksum
from licensor.models import LicenseValidationResult, utc_now

logger = logging.getLogger(__name__)

_KEY_PREFIX = "license_validation"

# Thumbprint slot used when signature checking is disabled.
UNVERIFIED_KEY = "unverified"


def make_cache_key(thumbprint: str, digest: str) -> str:
    """Build the cache key for a signed license."""
    return f"{_KEY_PREFIX}_{thumbprint}_{digest}"


def envelope_digest(license_data: str, signature: str) -> str:
    """Digest binding the encoded license to the signature presented with it."""
    return compute_checksum(f"{license_data}.{signature}")


@dataclass
class _Entry:
    result: LicenseValidationResult
    cached_at: datetime
    expires_at: datetime


class ValidationResultCache:
    """Thread-safe TTL cache of :class:`LicenseValidationResult` objects.

    :param clock: Callable returning the current UTC time.  Tests inject a
        fixed clock to control expiry.
    :param max_entries: Upper bound on stored entries; the oldest entries
        are evicted first.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_entries: int = 10000,
    ) -> None:
        self._clock = clock or utc_now
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[LicenseValidationResult]:
        """Return a copy of the cached result for *key*, or ``None``."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return copy.deepcopy(entry.result)

    def set(self, key: str, result: LicenseValidationResult, ttl: timedelta) -> None:
        """Store a copy of *result* under *key* for *ttl*.

        A non-positive *ttl* stores nothing.
        """
        if ttl <= timedelta(0):
            return
        now = self._clock()
        entry = _Entry(result=copy.deepcopy(result), cached_at=now, expires_at=now + ttl)
        with self._lock:
            self._entries[key] = entry
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        """Drop oldest entries beyond ``max_entries``.

        Must be called while holding ``self._lock``.
        """
        while len(self._entries) > self._max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].cached_at)
            del self._entries[oldest]
            logger.debug("Evicted cached validation result %s", oldest)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Return hit/miss counters and current size."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
            }
