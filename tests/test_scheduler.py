from datetime import UTC, datetime, timedelta

import pytest

from autolot.config import SchedulerSettings
from autolot.exceptions import RunAlreadyActiveError, SourceConnectionError
from autolot.imports.models import ImportConfig, ScheduleSettings
from autolot.imports.scheduler import ImportScheduler, next_run_at

from conftest import DEALER, basic_mappings

MONDAY = datetime(2024, 1, 1, 10, 20, tzinfo=UTC)


@pytest.mark.parametrize("schedule,after,expected", [
    (ScheduleSettings(frequency="hourly", time_minute=15), MONDAY, datetime(2024, 1, 1, 11, 15, tzinfo=UTC)),
    (ScheduleSettings(frequency="hourly", time_minute=45), MONDAY, datetime(2024, 1, 1, 10, 45, tzinfo=UTC)),
    (ScheduleSettings(frequency="daily", time_hour=2, time_minute=30), MONDAY, datetime(2024, 1, 2, 2, 30, tzinfo=UTC)),
    (ScheduleSettings(frequency="daily", time_hour=18), MONDAY, datetime(2024, 1, 1, 18, 0, tzinfo=UTC)),
    (ScheduleSettings(frequency="weekly", day_of_week=2, time_hour=8), MONDAY, datetime(2024, 1, 3, 8, 0, tzinfo=UTC)),
    (ScheduleSettings(frequency="weekly", time_hour=8), MONDAY, datetime(2024, 1, 8, 8, 0, tzinfo=UTC)),
    (ScheduleSettings(frequency="daily", time_hour=10, time_minute=20), MONDAY, datetime(2024, 1, 2, 10, 20, tzinfo=UTC)),
])
def test_next_run_at(schedule, after, expected):
    assert next_run_at(schedule, after) == expected


def test_next_run_at_manual_or_inactive():
    assert next_run_at(ScheduleSettings(), MONDAY) is None
    assert next_run_at(ScheduleSettings(frequency="daily", is_active=False), MONDAY) is None


def test_next_run_at_in_local_time():
    schedule = ScheduleSettings(frequency="daily", time_hour=9)

    result = next_run_at(schedule, datetime(2024, 1, 15, 12, 0, tzinfo=UTC), tz="America/New_York")

    assert result == datetime(2024, 1, 15, 14, 0, tzinfo=UTC)


def test_next_run_at_naive_is_utc():
    schedule = ScheduleSettings(frequency="daily", time_hour=12)

    assert next_run_at(schedule, datetime(2024, 1, 1, 11, 0)) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class FakeRunManager:
    def __init__(self, registry, error=None):
        self.registry = registry
        self.error = error
        self.executed = []

    def resolve(self, config):
        return config

    def execute(self, config_id, source_ref=None, trigger="manual"):
        if self.error:
            raise self.error
        run_id = f"run-{len(self.executed) + 1}"
        assert self.registry.try_start_run(config_id, run_id)
        self.executed.append((config_id, source_ref, trigger))
        return run_id


@pytest.fixture
def daily(registry):
    schedule = ScheduleSettings(frequency="daily", time_hour=2)
    return registry.create(
        ImportConfig(dealer_id=DEALER, name="Daily", field_mappings=basic_mappings(), schedule=schedule)
    )


def _scheduler(registry, manager):
    return ImportScheduler(registry, manager, SchedulerSettings(timezone="UTC"))


def test_first_tick_only_computes_next_instant(registry, daily):
    manager = FakeRunManager(registry)

    assert _scheduler(registry, manager).tick(MONDAY) == []
    assert registry.get_run_state(daily.id).next_run_at == datetime(2024, 1, 2, 2, 0, tzinfo=UTC)
    assert manager.executed == []


def test_due_config_runs_once(registry, daily):
    manager = FakeRunManager(registry)
    scheduler = _scheduler(registry, manager)
    registry.set_next_run(daily.id, MONDAY - timedelta(minutes=1))

    assert scheduler.tick(MONDAY) == ["run-1"]
    # Still running: further ticks skip without queuing.
    assert scheduler.tick(MONDAY + timedelta(minutes=1)) == []
    assert scheduler.tick(MONDAY + timedelta(minutes=2)) == []
    assert manager.executed == [(daily.id, None, "scheduled")]


def test_not_yet_due(registry, daily):
    manager = FakeRunManager(registry)
    registry.set_next_run(daily.id, MONDAY + timedelta(hours=1))

    assert _scheduler(registry, manager).tick(MONDAY) == []


def test_manual_and_inactive_configs_ignored(registry):
    registry.create(ImportConfig(dealer_id=DEALER, name="Manual", field_mappings=basic_mappings()))
    inactive = registry.create(
        ImportConfig(
            dealer_id=DEALER,
            name="Off",
            is_active=False,
            field_mappings=basic_mappings(),
            schedule=ScheduleSettings(frequency="hourly"),
        )
    )
    registry.set_next_run(inactive.id, MONDAY - timedelta(hours=1))
    manager = FakeRunManager(registry)

    assert _scheduler(registry, manager).tick(MONDAY) == []
    assert all(s.next_run_at is None or s.config_id == inactive.id for s in registry.list_run_states())


def test_manual_run_won_the_race(registry, daily):
    manager = FakeRunManager(registry, error=RunAlreadyActiveError(daily.id, "manual-1"))
    registry.set_next_run(daily.id, MONDAY - timedelta(minutes=1))

    assert _scheduler(registry, manager).tick(MONDAY) == []


def test_failed_start_returns_to_idle(registry, daily):
    manager = FakeRunManager(registry, error=SourceConnectionError("down"))
    registry.set_next_run(daily.id, MONDAY - timedelta(minutes=1))

    _scheduler(registry, manager).tick(MONDAY)

    state = registry.get_run_state(daily.id)
    assert state.state == "idle"
    assert state.next_run_at == datetime(2024, 1, 2, 2, 0, tzinfo=UTC)


def test_start_and_shutdown(registry):
    scheduler = ImportScheduler(registry, FakeRunManager(registry), SchedulerSettings(tick_seconds=3600))

    scheduler.start()
    try:
        assert scheduler.running
        assert scheduler._scheduler.get_job("import_scheduler_tick") is not None
    finally:
        scheduler.shutdown()
    assert not scheduler.running
