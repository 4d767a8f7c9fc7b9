#!/usr/bin/env python3
"""
Update scheduling for feeds.

This module contains two pieces:

- UpdateScheduler: a pure calculator mapping (update mode, retry count, now)
  to the next time a feed becomes eligible for an update. It never touches the
  network or the database; the clock is injectable for determinism.
- AutoUpdateScheduler: the background trigger that sleeps until the earliest
  scheduled update and then runs a batch of outdated feeds. Batches call
  schedule() when they finish so the trigger always reflects the latest ledger.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from time import time
from typing import Callable, Dict, Iterable, Optional
from zoneinfo import ZoneInfo

from config import config, get_logger
from models import DatabaseQueue, NEXT_UPDATE_NEVER, NEXT_UPDATE_ON_APP_LAUNCH, UpdateMode
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("scheduler")
_tracer = get_tracer("scheduler")

MINUTE_IN_SECONDS = 60
HOUR_IN_SECONDS = 3600

FIXED_INTERVALS: Dict[UpdateMode, int] = {
    UpdateMode.EVERY_15_MINUTES: 15 * MINUTE_IN_SECONDS,
    UpdateMode.EVERY_30_MINUTES: 30 * MINUTE_IN_SECONDS,
    UpdateMode.HOURLY: HOUR_IN_SECONDS,
    UpdateMode.EVERY_2_HOURS: 2 * HOUR_IN_SECONDS,
    UpdateMode.EVERY_3_HOURS: 3 * HOUR_IN_SECONDS,
    UpdateMode.EVERY_4_HOURS: 4 * HOUR_IN_SECONDS,
    UpdateMode.EVERY_6_HOURS: 6 * HOUR_IN_SECONDS,
    UpdateMode.EVERY_8_HOURS: 8 * HOUR_IN_SECONDS,
    UpdateMode.EVERY_12_HOURS: 12 * HOUR_IN_SECONDS,
    UpdateMode.DAILY: 24 * HOUR_IN_SECONDS,
}


def _resolve_timezone(name: Optional[str]) -> tzinfo:
    try:
        return ZoneInfo(str(name or "UTC"))
    except Exception:
        logger.warning(f"Invalid timezone '{name}', falling back to UTC")
        return timezone.utc


@dataclass(frozen=True)
class UpdatePolicy:
    """Cadence and backoff rules; see update_policy.yaml."""

    default_mode: UpdateMode = UpdateMode.ADAPTIVE
    retry_base_minutes: int = 5
    retry_max_hours: int = 24
    adaptive_min_minutes: int = 15
    adaptive_max_minutes: int = 24 * 60
    adaptive_fallback_minutes: int = 60
    adaptive_sample_size: int = 10
    timezone_name: str = "UTC"

    @classmethod
    def from_config(cls) -> "UpdatePolicy":
        default_mode = UpdateMode.parse(config.DEFAULT_UPDATE_MODE)
        if default_mode == UpdateMode.DEFAULT:
            default_mode = UpdateMode.ADAPTIVE
        return cls(
            default_mode=default_mode,
            retry_base_minutes=config.RETRY_BASE_MINUTES,
            retry_max_hours=config.RETRY_MAX_HOURS,
            adaptive_min_minutes=config.ADAPTIVE_MIN_MINUTES,
            adaptive_max_minutes=config.ADAPTIVE_MAX_MINUTES,
            adaptive_fallback_minutes=config.ADAPTIVE_FALLBACK_MINUTES,
            adaptive_sample_size=config.ADAPTIVE_SAMPLE_SIZE,
            timezone_name=config.SCHEDULER_TIMEZONE,
        )


class UpdateScheduler:
    """Computes next update times from a feed's update mode."""

    def __init__(self, policy: Optional[UpdatePolicy] = None, clock: Callable[[], float] = time):
        self.policy = policy or UpdatePolicy.from_config()
        self.clock = clock
        self.timezone = _resolve_timezone(self.policy.timezone_name)

    def now(self) -> int:
        return int(self.clock())

    def resolve_mode(self, mode: UpdateMode) -> UpdateMode:
        """Map DEFAULT to the configured default update mode."""
        if mode == UpdateMode.DEFAULT:
            return self.policy.default_mode
        return mode

    def next_update_time(
        self,
        source_id: int,
        mode: UpdateMode,
        now: int,
        publish_times: Iterable[int] = (),
    ) -> int:
        """Return when a successfully updated feed should be updated next.

        Args:
            source_id: Feed id (used for diagnostics only)
            mode: The feed's update mode
            now: Time of the successful update
            publish_times: Known entry publish times, consulted for ADAPTIVE only

        Returns:
            A Unix timestamp after ``now``, or one of the NEXT_UPDATE_* sentinels
        """
        resolved = self.resolve_mode(mode)

        if resolved == UpdateMode.DISABLED:
            return NEXT_UPDATE_NEVER
        if resolved == UpdateMode.ON_APP_LAUNCH:
            return NEXT_UPDATE_ON_APP_LAUNCH
        if resolved == UpdateMode.ADAPTIVE:
            interval = self.adaptive_interval(publish_times)
            logger.debug(f"Feed {source_id}: adaptive interval {interval / MINUTE_IN_SECONDS:.0f}m")
            return now + interval

        return self._next_boundary(now, FIXED_INTERVALS[resolved])

    def next_update_retry_time(self, mode: UpdateMode, retry: int, now: Optional[int] = None) -> int:
        """Return when a feed should be retried after ``retry`` consecutive failures.

        The delay doubles with every failure and is capped by the policy.
        """
        resolved = self.resolve_mode(mode)
        if resolved == UpdateMode.DISABLED:
            return NEXT_UPDATE_NEVER
        if resolved == UpdateMode.ON_APP_LAUNCH:
            return NEXT_UPDATE_ON_APP_LAUNCH

        if now is None:
            now = self.now()
        return now + self.retry_delay(retry)

    def retry_delay(self, retry: int) -> int:
        """Exponential backoff: base * 2^(retry-1), capped at the policy maximum."""
        attempt = max(1, retry)
        max_delay = self.policy.retry_max_hours * HOUR_IN_SECONDS
        base_delay = self.policy.retry_base_minutes * MINUTE_IN_SECONDS
        # Avoid computing huge powers for long failure streaks
        if attempt > 32:
            return max_delay
        return min(base_delay * (2 ** (attempt - 1)), max_delay)

    def adaptive_interval(self, publish_times: Iterable[int]) -> int:
        """Poll at half the average gap between the most recent entries."""
        min_interval = self.policy.adaptive_min_minutes * MINUTE_IN_SECONDS
        max_interval = self.policy.adaptive_max_minutes * MINUTE_IN_SECONDS

        recent = sorted({int(t) for t in publish_times if t}, reverse=True)[:self.policy.adaptive_sample_size]
        if len(recent) < 2:
            interval = self.policy.adaptive_fallback_minutes * MINUTE_IN_SECONDS
        else:
            average_gap = (recent[0] - recent[-1]) / (len(recent) - 1)
            interval = int(average_gap / 2)

        return max(min_interval, min(interval, max_interval))

    def _next_boundary(self, now: int, interval: int) -> int:
        """Next multiple of ``interval`` strictly after ``now``, in local wall-clock time."""
        offset = datetime.fromtimestamp(now, self.timezone).utcoffset()
        offset_seconds = int(offset.total_seconds()) if offset else 0
        local_now = now + offset_seconds
        return (local_now // interval + 1) * interval - offset_seconds


class AutoUpdateScheduler:
    """Background trigger that runs outdated feed batches when they become due."""

    def __init__(self, db: DatabaseQueue, clock: Callable[[], float] = time, max_sleep_seconds: Optional[float] = None):
        self.db = db
        self.clock = clock
        self.max_sleep_seconds = max_sleep_seconds or config.SCHEDULER_MAX_SLEEP_MINUTES * MINUTE_IN_SECONDS
        self.next_run_time: Optional[int] = None
        self._wake = asyncio.Event()

    @trace_span("scheduler.schedule", tracer_name="scheduler")
    async def schedule(self) -> Optional[int]:
        """Recompute the next wake-up from the ledger and wake the loop."""
        self.next_run_time = await self.db.execute('get_earliest_next_update_time')
        if self.next_run_time is None:
            logger.info("No timed feed updates scheduled")
        else:
            when = datetime.fromtimestamp(self.next_run_time, timezone.utc).isoformat()
            logger.info(f"Next feed update scheduled at {when}")
        self._wake.set()
        return self.next_run_time

    def seconds_until_next_run(self, now: Optional[int] = None) -> float:
        """Seconds to sleep before the next batch, between 1s and the configured maximum."""
        if self.next_run_time is None:
            return self.max_sleep_seconds
        if now is None:
            now = int(self.clock())
        return max(1.0, min(float(self.next_run_time - now), self.max_sleep_seconds))

    async def _sleep_until_due(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True if woken early by schedule()."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run(self, updater) -> None:
        """Run an app-launch batch, then keep updating feeds as they become due.

        Args:
            updater: FeedUpdater whose batches call back into schedule()
        """
        logger.info("Starting background feed updates")
        try:
            await updater.update_outdated_feeds(app_launch=True)
        except Exception as e:
            logger.error(f"Error in app launch update batch: {e}")

        while True:
            try:
                self._wake.clear()
                sleep_time = self.seconds_until_next_run()
                logger.debug(f"Sleeping {sleep_time / MINUTE_IN_SECONDS:.1f} minutes until next update batch")

                if await self._sleep_until_due(sleep_time):
                    continue

                await updater.update_outdated_feeds(app_launch=False)

            except asyncio.CancelledError:
                logger.info("Background feed updates cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"Error in scheduled update batch: {e}")
                await asyncio.sleep(config.SCHEDULER_ERROR_DELAY_SECONDS)
