"""
Watchlist Source Cache
Holds the most recently ingested entity set of every source together with its
refresh timestamp, and refreshes a source when its data goes stale

Features:
- Immutable SourceCacheEntry replaced wholesale on refresh (readers never see
  a partially loaded list)
- One refresh at a time per source (asyncio.Lock), concurrent screenings wait
  for it instead of downloading again
- Blocking download and parse run in a thread pool under a deadline
- Failed refresh keeps serving the previous entity set, retried no more often
  than retry_interval
"""

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Iterable, Tuple

from downloader import FetchError, ParseError, WatchlistSource
from watchlist_models import SanctionedEntity

logger = logging.getLogger(__name__)


class SearchError(Exception):
    """Raised when a source cannot be queried: no data was ever loaded and refreshing failed"""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


@dataclass(frozen=True)
class SourceCacheEntry:
    """Entity set of one source as of its last successful refresh"""
    source: str
    entities: Tuple[SanctionedEntity, ...] = ()
    last_refreshed: Optional[datetime] = None
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None

    @property
    def total_entries(self) -> int:
        return len(self.entities)

    @property
    def has_data(self) -> bool:
        return self.last_refreshed is not None


class SourceCache:
    """Per-source entity sets with staleness control"""

    def __init__(self,
                 max_age: timedelta = timedelta(hours=24),
                 retry_interval: timedelta = timedelta(seconds=300),
                 download_timeout: float = 120.0,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize cache

        Args:
            max_age: Age after which a source's data is stale
            retry_interval: Minimum gap between refresh attempts after a failure
            download_timeout: Deadline in seconds for one download and parse
            executor: Pool for the blocking download (default loop executor if None)
            clock: Source of the current time
        """
        self.max_age = max_age
        self.retry_interval = retry_interval
        self.download_timeout = download_timeout
        self._executor = executor
        self._clock = clock
        self._entries: Dict[str, SourceCacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def snapshot(self, name: str) -> Optional[SourceCacheEntry]:
        """Current entry of a source, or None if the source was never touched"""
        return self._entries.get(name)

    def entries(self) -> List[SourceCacheEntry]:
        return list(self._entries.values())

    def seed(self, name: str, entities: Iterable[SanctionedEntity],
             refreshed_at: Optional[datetime] = None) -> SourceCacheEntry:
        """Preload a source, e.g. from a local file"""
        entry = SourceCacheEntry(
            source=name,
            entities=tuple(entities),
            last_refreshed=refreshed_at or self._clock(),
        )
        self._entries[name] = entry
        logger.info(f"✓ Seeded {name} cache with {entry.total_entries} entities")
        return entry

    def is_stale(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None or entry.last_refreshed is None:
            return True
        return self._clock() - entry.last_refreshed > self.max_age

    def _in_backoff(self, entry: Optional[SourceCacheEntry]) -> bool:
        if entry is None or entry.last_error is None or entry.last_attempt is None:
            return False
        return self._clock() - entry.last_attempt < self.retry_interval

    async def get_entities(self, source: WatchlistSource) -> Tuple[SanctionedEntity, ...]:
        """Entity set of a source, refreshing it first when stale

        Raises:
            SearchError: If there is no data at all and it cannot be loaded
        """
        name = source.name
        if not self.is_stale(name):
            return self._entries[name].entities

        async with self._lock_for(name):
            # Another caller may have refreshed while we waited
            if not self.is_stale(name):
                return self._entries[name].entities

            entry = self._entries.get(name)
            if self._in_backoff(entry):
                if entry.has_data:
                    return entry.entities
                raise SearchError(f"No {name} data available: {entry.last_error}", source=name)

            try:
                return (await self._refresh_locked(source)).entities
            except (FetchError, ParseError) as e:
                entry = self._entries.get(name)
                if entry is not None and entry.has_data:
                    logger.warning(f"⚠ Serving stale {name} data from "
                                   f"{entry.last_refreshed.isoformat()} after failed refresh: {e}")
                    return entry.entities
                raise SearchError(f"No {name} data available: {e}", source=name) from e

    async def refresh(self, source: WatchlistSource, force: bool = True) -> SourceCacheEntry:
        """Download and parse a source now

        Args:
            source: Source to refresh
            force: Refresh even if the current data is fresh

        Raises:
            FetchError: Download failed or missed the deadline
            ParseError: Document could not be parsed
        """
        async with self._lock_for(source.name):
            if not force and not self.is_stale(source.name):
                return self._entries[source.name]
            return await self._refresh_locked(source)

    async def _refresh_locked(self, source: WatchlistSource) -> SourceCacheEntry:
        name = source.name
        attempt = self._clock()
        loop = asyncio.get_running_loop()

        try:
            entities = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._download_and_parse, source),
                timeout=self.download_timeout
            )
        except asyncio.TimeoutError as e:
            # The worker thread is not interrupted, its result is discarded
            error = FetchError(f"{name} refresh exceeded {self.download_timeout:g}s deadline", source=name)
            self._record_failure(name, error, attempt)
            raise error from e
        except (FetchError, ParseError) as e:
            self._record_failure(name, e, attempt)
            raise

        entry = SourceCacheEntry(
            source=name,
            entities=tuple(entities),
            last_refreshed=self._clock(),
            last_attempt=attempt,
        )
        self._entries[name] = entry
        logger.info(f"✓ {name} cache refreshed: {entry.total_entries} entities")
        return entry

    def _download_and_parse(self, source: WatchlistSource) -> List[SanctionedEntity]:
        raw = source.fetch(timeout=self.download_timeout)
        return source.parse(raw)

    def _record_failure(self, name: str, error: Exception, attempt: datetime) -> None:
        entry = self._entries.get(name) or SourceCacheEntry(source=name)
        self._entries[name] = replace(entry, last_error=str(error), last_attempt=attempt)
        logger.error(f"✗ {name} refresh failed: {error}")
