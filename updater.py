#!/usr/bin/env python3
"""
Feed update orchestration.

FeedUpdater runs one update cycle per source: conditional fetch, parse,
merge and ledger accounting. It marks each source in flight for the duration
of its cycle, and runs batches of outdated sources concurrently, asking the
background trigger to reschedule once every batch has finished.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from time import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from config import config, get_logger
from errors import describe_error
from feed_parser import parse_feed
from fetcher import ConditionalFetcher, FetchResponse
from models import DatabaseQueue, FeedEvent, ParsedEntry, Source, UpdateMode, UpdateOutcome
from scheduler import UpdateScheduler
from telemetry import get_tracer, trace_span
from tracker import InFlightTracker

# Module-specific logger
logger = get_logger("updater")
_tracer = get_tracer("updater")


def parse_feed_events(content: bytes, base_url: str) -> List[FeedEvent]:
    """Parse a whole document; meant to run in a worker thread."""
    return list(parse_feed(content, base_url))


class FeedUpdater:
    """Updates feeds and keeps their success/failure ledger."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: ConditionalFetcher,
        scheduler: UpdateScheduler,
        tracker: InFlightTracker,
        reschedule: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.tracker = tracker
        self.reschedule = reschedule
        self.clock = clock
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config.MAX_CONCURRENT_UPDATES,
            thread_name_prefix="feed-parser",
        )
        self._semaphore = asyncio.Semaphore(config.MAX_CONCURRENT_UPDATES)
        self._source_locks: Dict[int, asyncio.Lock] = {}
        self._source_lock_users: Dict[int, int] = {}

    def _now(self) -> int:
        return int(self.clock())

    def close(self) -> None:
        """Shut down the parser thread pool if this updater created it."""
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    @asynccontextmanager
    async def _source_lock(self, source_id: int) -> AsyncIterator[None]:
        """Hold the source's lock; the lock is dropped once nobody uses it."""
        lock = self._source_locks.get(source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[source_id] = lock
        self._source_lock_users[source_id] = self._source_lock_users.get(source_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._source_lock_users[source_id] - 1
            if remaining:
                self._source_lock_users[source_id] = remaining
            else:
                del self._source_lock_users[source_id]
                del self._source_locks[source_id]

    @trace_span(
        "update_feed",
        tracer_name="updater",
        attr_from_args=lambda self, source_id: {"feed.id": source_id},
    )
    async def update_feed(self, source_id: int) -> Optional[UpdateOutcome]:
        """Run one update cycle for a source.

        Concurrent requests for the same source run one after the other, each
        against freshly loaded state.

        Returns:
            The cycle's outcome, or None if the source does not exist
        """
        async with self._source_lock(source_id):
            async with self._semaphore:
                source = await self.db.execute('get_source', source_id=source_id)
                if source is None:
                    logger.warning(f"Feed {source_id} not found, skipping update")
                    return None

                try:
                    await self.tracker.add(source.id)
                    return await self._run_cycle(source)
                finally:
                    # The remove request is queued behind the add, even when cancelled
                    await asyncio.shield(self.tracker.remove(source.id))

    async def _run_cycle(self, source: Source) -> UpdateOutcome:
        try:
            response = await self.fetcher.fetch(source.url, source.http_etag, source.http_last_modified)
            if not response.not_modified:
                events = await self._parse(response.content or b'', source.url)
        except Exception as e:
            # Fetch and parser errors of any kind fail this cycle only
            await self._record_failure(source, e, self._now())
            return UpdateOutcome.FAILED

        now = self._now()
        if response.not_modified:
            await self._record_success(source, response, now)
            return UpdateOutcome.UNMODIFIED

        try:
            await self._record_success(source, response, now, events)
        except Exception as e:
            # The merge transaction was rolled back
            await self._record_failure(source, e, self._now())
            return UpdateOutcome.FAILED
        return UpdateOutcome.CONTENT_CHANGED

    async def _parse(self, content: bytes, base_url: str) -> List[FeedEvent]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, parse_feed_events, content, base_url)

    async def _publish_times(self, source: Source, events: Optional[Iterable[FeedEvent]]) -> List[int]:
        """Recent publish times for adaptive scheduling; empty for other modes."""
        if self.scheduler.resolve_mode(source.update_mode) != UpdateMode.ADAPTIVE:
            return []

        sample_size = self.scheduler.policy.adaptive_sample_size
        publish_times = [
            event.publish_time
            for event in events or ()
            if isinstance(event, ParsedEntry) and event.publish_time is not None
        ]
        if len(publish_times) < 2:
            stored = await self.db.execute('get_recent_publish_times', source_id=source.id, limit=sample_size)
            publish_times = sorted(set(publish_times) | set(stored), reverse=True)
        return publish_times

    async def _record_success(
        self,
        source: Source,
        response: FetchResponse,
        now: int,
        events: Optional[List[FeedEvent]] = None,
    ) -> None:
        """Write the success ledger, merging ``events`` in the same transaction."""
        publish_times = await self._publish_times(source, events)
        fields: Dict[str, Any] = {
            'last_update_time': now,
            'last_update_error': None,
            'next_update_time': self.scheduler.next_update_time(source.id, source.update_mode, now, publish_times),
            'next_update_retry': 0,
        }

        if events is None:
            await self.db.execute('update_source', source_id=source.id, fields=fields)
            logger.info(f"Feed {source.id} unchanged")
            return

        fields['http_etag'] = response.etag
        fields['http_last_modified'] = response.last_modified
        counts = await self.db.execute(
            'merge_feed_content',
            source_id=source.id,
            events=events,
            ledger_fields=fields,
            now=now,
        )
        logger.info(
            f"Feed {source.id} updated: {counts['inserted']} new, {counts['updated']} refreshed entries"
        )

    async def _record_failure(self, source: Source, error: BaseException, now: int) -> None:
        """Record a failed cycle and schedule its retry with backoff."""
        message = describe_error(error)
        retry = source.next_update_retry + 1
        fields = {
            'last_update_error': message,
            'next_update_retry': retry,
            'next_update_time': self.scheduler.next_update_retry_time(source.update_mode, retry, now),
        }
        logger.warning(f"Feed {source.id} ({source.url}) update failed, attempt {retry}: {message}")
        await self.db.execute('update_source', source_id=source.id, fields=fields)

    @trace_span(
        "update_outdated_feeds",
        tracer_name="updater",
        attr_from_args=lambda self, app_launch=False: {"feed.app_launch": bool(app_launch)},
    )
    async def update_outdated_feeds(self, app_launch: bool = False) -> Dict[int, UpdateOutcome]:
        """Update every source that is due, then reschedule exactly once.

        Args:
            app_launch: Also include ON_APP_LAUNCH sources and those due soon

        Returns:
            Outcome per source id for the cycles that completed
        """
        outcomes: Dict[int, UpdateOutcome] = {}
        try:
            lookahead = config.APP_LAUNCH_LOOKAHEAD_MINUTES * 60 if app_launch else 0
            sources = await self.db.execute(
                'query_outdated_sources',
                now=self._now(),
                app_launch=app_launch,
                lookahead_seconds=lookahead,
            )
            if not sources:
                logger.info("No feeds due for update")
                return outcomes

            logger.info(f"Updating {len(sources)} outdated feeds")
            results = await asyncio.gather(
                *(self.update_feed(source.id) for source in sources),
                return_exceptions=True,
            )

            for source, result in zip(sources, results):
                if isinstance(result, BaseException):
                    logger.error(f"Feed {source.id} ({source.url}) update aborted: {describe_error(result)}")
                elif result is not None:
                    outcomes[source.id] = result

            failed = sum(1 for outcome in outcomes.values() if outcome == UpdateOutcome.FAILED)
            logger.info(f"Update batch finished: {len(outcomes)} completed, {failed} failed")
            return outcomes
        finally:
            if self.reschedule is not None:
                try:
                    await asyncio.shield(self.reschedule())
                except Exception as e:
                    logger.error(f"Failed to reschedule feed updates: {e}")
