"""
Scheduled import runs.

Each config carries a run-state record (idle -> due -> running -> idle). A
minute tick, driven by an APScheduler background job, fires configs whose
next instant has passed; configs still running are skipped and missed
instants are never queued.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler

from autolot.config import SchedulerSettings, settings
from autolot.exceptions import AutoLotError, ConfigError, RunAlreadyActiveError
from autolot.imports.models import ScheduleSettings

if TYPE_CHECKING:
    from autolot.data.repositories import ImportConfigRegistry
    from autolot.imports.service import RunManager

logger = logging.getLogger(__name__)

TICK_JOB_ID = "import_scheduler_tick"


def next_run_at(schedule: ScheduleSettings, after: datetime, tz: str = "UTC") -> Optional[datetime]:
    """First scheduled instant strictly after `after`, in UTC; None for manual or inactive schedules."""
    if schedule.frequency == "manual" or not schedule.is_active:
        return None
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    local = after.astimezone(ZoneInfo(tz))

    if schedule.frequency == "hourly":
        candidate = local.replace(minute=schedule.time_minute, second=0, microsecond=0)
        step = timedelta(hours=1)
    else:
        candidate = local.replace(hour=schedule.time_hour, minute=schedule.time_minute, second=0, microsecond=0)
        step = timedelta(days=1)
        if schedule.frequency == "weekly":
            weekday = schedule.day_of_week if schedule.day_of_week is not None else 0
            candidate += timedelta(days=(weekday - local.weekday()) % 7)
            step = timedelta(weeks=1)

    if candidate <= local:
        candidate += step
    return candidate.astimezone(UTC)


class ImportScheduler:
    def __init__(
        self,
        registry: "ImportConfigRegistry",
        run_manager: "RunManager",
        scheduler_settings: Optional[SchedulerSettings] = None,
    ):
        self.registry = registry
        self.run_manager = run_manager
        self.settings = scheduler_settings or settings.scheduler
        self._scheduler: Optional[BackgroundScheduler] = None

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Evaluates every scheduled config once; returns the ids of runs started."""
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        started: List[str] = []
        for config in self.registry.list():
            if not config.is_active:
                continue
            try:
                schedule = self.run_manager.resolve(config).schedule
            except ConfigError:
                logger.exception("cannot resolve settings of scheduled config", extra={"config_id": config.id})
                continue
            if schedule.frequency == "manual" or not schedule.is_active:
                continue

            state = self.registry.get_run_state(config.id)
            if state.next_run_at is None:
                self.registry.set_next_run(config.id, next_run_at(schedule, now, self.settings.timezone))
                continue
            if now < state.next_run_at:
                continue
            if state.state == "running":
                logger.info(
                    "scheduled run skipped, previous run still running",
                    extra={"config_id": config.id, "run_id": state.current_run_id},
                )
                continue

            self.registry.mark_due(config.id)
            try:
                run_id = self.run_manager.execute(config.id, None, trigger="scheduled")
            except RunAlreadyActiveError:
                logger.info("scheduled run skipped, a manual run started first", extra={"config_id": config.id})
                continue
            except AutoLotError:
                logger.exception("scheduled run could not start", extra={"config_id": config.id})
                self.registry.set_idle(config.id)
                self.registry.set_next_run(config.id, next_run_at(schedule, now, self.settings.timezone))
                continue
            logger.info("scheduled run started", extra={"config_id": config.id, "run_id": run_id})
            started.append(run_id)
        return started

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("scheduler tick failed")

    def start(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            return
        self._scheduler = BackgroundScheduler(daemon=True, timezone=self.settings.timezone)
        self._scheduler.add_job(
            self._safe_tick,
            "interval",
            seconds=self.settings.tick_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
            misfire_grace_time=self.settings.misfire_grace_seconds,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info("import scheduler started", extra={"tick_seconds": self.settings.tick_seconds})

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
