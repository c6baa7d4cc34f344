"""Summary caches keyed by video identity.

Two backends share the :class:`SummaryCache` protocol: a bounded
in-memory LRU for a single process, and a ``diskcache``-backed store
with TTL that survives restarts. Only successful results are stored;
the service never writes partial or failed output.
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import diskcache
import structlog

from video_digest.models import SummaryResult

if TYPE_CHECKING:
    from video_digest.config import SummarySettings
    from video_digest.models import VideoIdentity

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_CACHE_DIR = Path("./data/summary_cache")
_DEFAULT_TTL_SECONDS = 7 * 86400
_CACHE_VERSION = "v1"


class SummaryCache(Protocol):
    """Storage for finished summaries."""

    def get_summary(self, identity: VideoIdentity) -> SummaryResult | None: ...

    def set_summary(self, identity: VideoIdentity, result: SummaryResult) -> None: ...

    def invalidate(self, identity: VideoIdentity) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory LRU
# ---------------------------------------------------------------------------


class MemorySummaryCache:
    """Bounded LRU of summaries, evicting the least recently used entry."""

    def __init__(self, max_size: int = 10) -> None:
        if max_size < 1:
            msg = f"max_size must be >= 1, got {max_size}"
            raise ValueError(msg)
        self.max_size = max_size
        self._entries: OrderedDict[VideoIdentity, SummaryResult] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get_summary(self, identity: VideoIdentity) -> SummaryResult | None:
        result = self._entries.get(identity)
        if result is None:
            logger.debug("summary_cache_miss", video_key=identity.key)
            return None
        self._entries.move_to_end(identity)
        logger.debug("summary_cache_hit", video_key=identity.key)
        return result

    def set_summary(self, identity: VideoIdentity, result: SummaryResult) -> None:
        self._entries[identity] = result
        self._entries.move_to_end(identity)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("summary_cache_evicted", video_key=evicted.key)

    def invalidate(self, identity: VideoIdentity) -> bool:
        return self._entries.pop(identity, None) is not None


# ---------------------------------------------------------------------------
# Disk-backed cache
# ---------------------------------------------------------------------------


def _build_cache_key(identity: VideoIdentity) -> str:
    """Build a deterministic cache key for a video identity.

    Args:
        identity: The video the summary belongs to.

    Returns:
        A hex SHA-256 digest string.
    """
    raw = f"{_CACHE_VERSION}:{identity.key}"
    return hashlib.sha256(raw.encode()).hexdigest()


class DiskSummaryCache:
    """Disk-backed summary cache with TTL.

    Results are stored as JSON dumps of :class:`SummaryResult` so that
    entries stay readable across model changes that keep the schema.

    Attributes:
        cache_dir: Directory path for the cache store.
        ttl_seconds: Time-to-live for cache entries in seconds.
    """

    def __init__(
        self,
        cache_dir: Path | str = _DEFAULT_CACHE_DIR,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self._cache: Any = None

    def _get_cache(self) -> Any:
        """Lazy-initialize the diskcache.Cache instance."""
        if self._cache is None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._cache = diskcache.Cache(str(self.cache_dir))
        return self._cache

    def get_summary(self, identity: VideoIdentity) -> SummaryResult | None:
        """Look up a cached summary.

        An entry that no longer validates against the current schema is
        treated as a miss and dropped.
        """
        key = _build_cache_key(identity)
        raw = self._get_cache().get(key)
        if raw is None:
            logger.debug("summary_cache_miss", video_key=identity.key)
            return None

        try:
            result = SummaryResult.model_validate_json(raw)
        except ValueError:
            logger.warning("summary_cache_corrupt", video_key=identity.key)
            self._get_cache().delete(key)
            return None

        logger.debug("summary_cache_hit", video_key=identity.key, key_prefix=key[:12])
        return result

    def set_summary(self, identity: VideoIdentity, result: SummaryResult) -> None:
        key = _build_cache_key(identity)
        self._get_cache().set(key, result.model_dump_json(), expire=self.ttl_seconds)
        logger.debug(
            "summary_cache_set",
            video_key=identity.key,
            key_prefix=key[:12],
            ttl_seconds=self.ttl_seconds,
        )

    def invalidate(self, identity: VideoIdentity) -> bool:
        return bool(self._get_cache().delete(_build_cache_key(identity)))

    def clear(self) -> int:
        """Clear all entries from the cache.

        Returns:
            Number of entries removed.
        """
        cache = self._get_cache()
        count = len(cache)
        cache.clear()
        logger.info("summary_cache_cleared", entries_removed=count)
        return count

    def close(self) -> None:
        if self._cache is not None:
            self._cache.close()
            self._cache = None


def build_cache(settings: SummarySettings) -> SummaryCache:
    """Create the cache backend selected by ``settings.cache_backend``."""
    if settings.cache_backend == "disk":
        return DiskSummaryCache(settings.cache_dir, settings.cache_ttl_seconds)
    return MemorySummaryCache(settings.cache_size)
