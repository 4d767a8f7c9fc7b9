import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from models import NEXT_UPDATE_NEVER, NEXT_UPDATE_ON_APP_LAUNCH, UpdateMode
from scheduler import AutoUpdateScheduler, FIXED_INTERVALS, UpdatePolicy, UpdateScheduler

NOW = 1_700_000_000  # 2023-11-14 22:13:20 UTC
HOUR = 3600


def make_scheduler(**overrides) -> UpdateScheduler:
    return UpdateScheduler(UpdatePolicy(**overrides), clock=lambda: NOW)


def test_hourly_aligns_to_next_boundary():
    scheduler = make_scheduler()
    assert scheduler.next_update_time(1, UpdateMode.HOURLY, NOW) == 1_700_002_800


def test_fixed_interval_is_strictly_after_now_on_a_boundary():
    scheduler = make_scheduler()
    on_boundary = 1_699_999_200
    assert scheduler.next_update_time(1, UpdateMode.HOURLY, on_boundary) == on_boundary + HOUR


def test_every_fixed_interval_lands_on_its_boundary():
    scheduler = make_scheduler()
    for mode, interval in FIXED_INTERVALS.items():
        next_time = scheduler.next_update_time(1, mode, NOW)
        assert NOW < next_time <= NOW + interval, mode
        assert next_time % interval == 0, mode


def test_daily_aligns_to_local_midnight():
    scheduler = make_scheduler(timezone_name="Asia/Kolkata")
    next_time = scheduler.next_update_time(1, UpdateMode.DAILY, NOW)

    local = datetime.fromtimestamp(next_time, ZoneInfo("Asia/Kolkata"))
    assert (local.hour, local.minute, local.second) == (0, 0, 0)
    assert NOW < next_time <= NOW + 24 * HOUR


def test_invalid_timezone_falls_back_to_utc():
    scheduler = make_scheduler(timezone_name="Not/AZone")
    assert scheduler.next_update_time(1, UpdateMode.DAILY, NOW) == 1_700_006_400


def test_disabled_and_app_launch_modes_use_sentinels():
    scheduler = make_scheduler()
    assert scheduler.next_update_time(1, UpdateMode.DISABLED, NOW) == NEXT_UPDATE_NEVER
    assert scheduler.next_update_retry_time(UpdateMode.DISABLED, 3, NOW) == NEXT_UPDATE_NEVER
    assert scheduler.next_update_time(1, UpdateMode.ON_APP_LAUNCH, NOW) == NEXT_UPDATE_ON_APP_LAUNCH
    assert scheduler.next_update_retry_time(UpdateMode.ON_APP_LAUNCH, 3, NOW) == NEXT_UPDATE_ON_APP_LAUNCH


def test_default_mode_resolves_through_policy():
    scheduler = make_scheduler(default_mode=UpdateMode.HOURLY)
    assert scheduler.resolve_mode(UpdateMode.DEFAULT) == UpdateMode.HOURLY
    assert scheduler.next_update_time(1, UpdateMode.DEFAULT, NOW) == scheduler.next_update_time(1, UpdateMode.HOURLY, NOW)

    disabled_by_default = make_scheduler(default_mode=UpdateMode.DISABLED)
    assert disabled_by_default.next_update_time(1, UpdateMode.DEFAULT, NOW) == NEXT_UPDATE_NEVER


def test_adaptive_polls_at_half_the_average_gap():
    scheduler = make_scheduler()
    publish_times = [NOW - i * 2 * HOUR for i in range(5)]
    assert scheduler.next_update_time(1, UpdateMode.ADAPTIVE, NOW, publish_times) == NOW + HOUR


def test_adaptive_interval_is_clamped():
    scheduler = make_scheduler(adaptive_min_minutes=15, adaptive_max_minutes=24 * 60)

    frequent = [NOW - i * 60 for i in range(10)]
    assert scheduler.adaptive_interval(frequent) == 15 * 60

    rare = [NOW - i * 10 * 24 * HOUR for i in range(3)]
    assert scheduler.adaptive_interval(rare) == 24 * HOUR


def test_adaptive_falls_back_without_enough_history():
    scheduler = make_scheduler(adaptive_fallback_minutes=90)
    assert scheduler.adaptive_interval([]) == 90 * 60
    assert scheduler.adaptive_interval([NOW]) == 90 * 60
    # Duplicate timestamps do not count as history
    assert scheduler.adaptive_interval([NOW, NOW]) == 90 * 60


def test_adaptive_only_samples_most_recent_entries():
    scheduler = make_scheduler(adaptive_sample_size=3)
    recent = [NOW, NOW - 2 * HOUR, NOW - 4 * HOUR]
    ancient = [NOW - 400 * 24 * HOUR]
    assert scheduler.adaptive_interval(recent + ancient) == HOUR


def test_retry_backoff_doubles_and_is_capped():
    scheduler = make_scheduler(retry_base_minutes=5, retry_max_hours=24)
    assert scheduler.next_update_retry_time(UpdateMode.HOURLY, 1, NOW) == NOW + 300
    assert scheduler.next_update_retry_time(UpdateMode.HOURLY, 2, NOW) == NOW + 600
    assert scheduler.next_update_retry_time(UpdateMode.HOURLY, 3, NOW) == NOW + 1200
    assert scheduler.next_update_retry_time(UpdateMode.HOURLY, 1000, NOW) == NOW + 24 * HOUR


def test_retry_backoff_is_non_decreasing():
    scheduler = make_scheduler()
    delays = [scheduler.retry_delay(retry) for retry in range(1, 40)]
    assert delays == sorted(delays)
    assert max(delays) == 24 * HOUR


def test_retry_time_uses_injected_clock():
    scheduler = make_scheduler()
    assert scheduler.next_update_retry_time(UpdateMode.ADAPTIVE, 1) == NOW + 300


class FakeQueue:
    def __init__(self, earliest):
        self.earliest = earliest
        self.calls = []

    async def execute(self, operation_name, **params):
        self.calls.append(operation_name)
        return self.earliest


class FakeUpdater:
    def __init__(self):
        self.calls = []
        self.second_batch = asyncio.Event()

    async def update_outdated_feeds(self, app_launch=False):
        self.calls.append(app_launch)
        if len(self.calls) >= 2:
            self.second_batch.set()
        return {}


def test_sleep_is_bounded():
    auto = AutoUpdateScheduler(FakeQueue(None), clock=lambda: NOW, max_sleep_seconds=600)
    assert auto.seconds_until_next_run() == 600

    auto.next_run_time = NOW - 100
    assert auto.seconds_until_next_run() == 1.0

    auto.next_run_time = NOW + 120
    assert auto.seconds_until_next_run() == 120

    auto.next_run_time = NOW + 10 * HOUR
    assert auto.seconds_until_next_run() == 600


@pytest.mark.asyncio
async def test_schedule_reads_earliest_update_and_wakes_loop():
    queue = FakeQueue(NOW + 300)
    auto = AutoUpdateScheduler(queue, clock=lambda: NOW)

    assert await auto.schedule() == NOW + 300
    assert queue.calls == ['get_earliest_next_update_time']
    assert auto.next_run_time == NOW + 300
    assert await auto._sleep_until_due(5) is True

    auto._wake.clear()
    assert await auto._sleep_until_due(0.01) is False


@pytest.mark.asyncio
async def test_run_starts_with_app_launch_batch():
    auto = AutoUpdateScheduler(FakeQueue(None), max_sleep_seconds=0.01)
    updater = FakeUpdater()

    task = asyncio.create_task(auto.run(updater))
    await asyncio.wait_for(updater.second_batch.wait(), timeout=5)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert updater.calls[0] is True
    assert updater.calls[1] is False
