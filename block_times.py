"""
Per-height resolution
Resolves block heights to block times and relay payout rates, cache first, node on miss
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait, FIRST_COMPLETED
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Type

from errors import AggregationCancelled, BlockLookupError, CacheError, ResolutionError, SourceError

logger = logging.getLogger(__name__)


class HeightResolver:
    """
    Resolve once, cache forever.

    Values that are fixed once a block is committed (its time, the params in
    force at it) are looked up remotely at most once per height. Concurrent
    resolutions of the same uncached height share a single remote lookup.
    """

    label = "value"
    lookup_errors: Tuple[Type[Exception], ...] = (BlockLookupError,)

    def __init__(self, repo, fetch: Callable[[int], Any], max_workers: int = 8):
        """
        Args:
            repo: Store with get(height) -> (value, found) and set(height, value)
            fetch: Remote lookup for one height
            max_workers: Upper bound on parallel remote lookups in resolve_many
        """
        self.repo = repo
        self.fetch = fetch
        self.max_workers = max_workers
        self._in_flight: Dict[int, Future] = {}
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = {"hits": 0, "lookups": 0, "failures": 0}

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self.stats[name] += 1

    def resolve(self, height: int) -> Any:
        """Resolve a block height, raising ResolutionError when it cannot be resolved"""
        name = type(self).__name__
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise ResolutionError(f"{name}.resolve: invalid height {height!r}", height=None)

        cached, found = self.repo.get(height)
        if found:
            self._count("hits")
            return cached

        with self._lock:
            future = self._in_flight.get(height)
            owner = future is None
            if owner:
                # A previous owner may have stored the value after our miss
                cached, found = self.repo.get(height)
                if not found:
                    future = Future()
                    self._in_flight[height] = future

        if owner and found:
            self._count("hits")
            return cached

        if not owner:
            # Another caller is already fetching this height
            return future.result()

        try:
            value = self._lookup(height)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            with self._lock:
                self._in_flight.pop(height, None)

    def _lookup(self, height: int) -> Any:
        self._count("lookups")
        try:
            value = self.fetch(height)
        except self.lookup_errors as e:
            self._count("failures")
            raise ResolutionError(f"{type(self).__name__}.resolve: {e}", height=height) from e

        try:
            self.repo.set(height, value)
        except CacheError as e:
            logger.warning(f"{self.label} for height {height} not cached: {e}")

        return value

    def resolve_many(
        self, heights: Iterable[int], cancel_event: Optional[threading.Event] = None
    ) -> Dict[int, Any]:
        """
        Resolve distinct heights in parallel

        Args:
            heights: Non-negative block heights; duplicates are resolved once
            cancel_event: When set, outstanding lookups are abandoned

        Returns:
            height -> value, or the ResolutionError for heights that failed
        """
        results: Dict[int, Any] = {}
        pending_heights = []
        for height in sorted(set(heights)):
            if _is_cancelled(cancel_event):
                raise AggregationCancelled(f"{self.label} resolution cancelled")
            cached, found = self.repo.get(height)
            if found:
                self._count("hits")
                results[height] = cached
            else:
                pending_heights.append(height)

        if not pending_heights:
            return results

        logger.debug(f"Resolving {len(pending_heights)} {self.label}s from the node")
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="height-resolver")
        try:
            futures = {executor.submit(self.resolve, height): height for height in pending_heights}
            not_done = set(futures)
            while not_done:
                done, not_done = wait(not_done, timeout=0.1, return_when=FIRST_COMPLETED)
                if _is_cancelled(cancel_event):
                    for future in not_done:
                        future.cancel()
                    raise AggregationCancelled(f"{self.label} resolution cancelled")
                for future in done:
                    height = futures[future]
                    try:
                        results[height] = future.result()
                    except ResolutionError as e:
                        results[height] = e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results


class BlockTimeResolver(HeightResolver):
    """Block height -> UTC block time"""

    label = "block time"
    lookup_errors = (BlockLookupError,)

    def __init__(self, repo, fetch_block_time: Callable[[int], datetime], max_workers: int = 8):
        super().__init__(repo, fetch_block_time, max_workers=max_workers)

    def resolve(self, height: int) -> datetime:
        return super().resolve(height)


class RelayRateResolver(HeightResolver):
    """Block height -> POKT paid to a servicer per relay under the params in force at that height"""

    label = "relay rate"
    lookup_errors = (SourceError,)

    def __init__(self, repo, fetch_rate: Callable[[int], Decimal], max_workers: int = 8):
        super().__init__(repo, fetch_rate, max_workers=max_workers)

    def resolve(self, height: int) -> Decimal:
        return super().resolve(height)


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()
