import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from autolot.config import settings
from autolot.data.repositories import ImportConfigRegistry
from autolot.exceptions import ConfigError, RunAlreadyActiveError
from autolot.imports.models import ImportConfig, ImportRun, PreviewResult
from autolot.imports.pipeline import ImportPipeline
from autolot.imports.scheduler import next_run_at
from autolot.imports.settings_resolver import resolve_config

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    run: ImportRun
    cancel_event: threading.Event
    future: Optional[Future] = None


class RunManager:
    """
    Runs imports in the background, one at a time per config.
    Manual and scheduled triggers share the same atomic run-state transition.
    """

    def __init__(
        self,
        registry: ImportConfigRegistry,
        pipeline: ImportPipeline,
        max_workers: Optional[int] = None,
        timezone: Optional[str] = None,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.timezone = timezone or settings.scheduler.timezone
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.imports.max_workers,
            thread_name_prefix="import-run",
        )
        self._lock = threading.Lock()
        self._active: Dict[str, _ActiveRun] = {}

    def resolve(self, config: ImportConfig) -> ImportConfig:
        """Applies global and dealer settings rows under the config's own values."""
        global_rows, dealer_rows = self.registry.settings_layers(config.dealer_id)
        return resolve_config(config, global_rows, dealer_rows)

    def execute(self, config_id: int, source_ref: Optional[str] = None, trigger: str = "manual") -> str:
        """Starts a run and returns its id immediately; raises RunAlreadyActiveError if one is running."""
        config = self.registry.get(config_id)
        if not config.is_active:
            raise ConfigError(f"Import config {config_id} is inactive")
        resolved = self.resolve(config)

        run_id = uuid4().hex
        if not self.registry.try_start_run(config_id, run_id):
            state = self.registry.get_run_state(config_id)
            raise RunAlreadyActiveError(config_id, state.current_run_id)

        run = ImportRun(
            run_id=run_id,
            config_id=config_id,
            dealer_id=config.dealer_id,
            trigger=trigger,
            source_ref=source_ref,
        )
        active = _ActiveRun(run=run, cancel_event=threading.Event())
        with self._lock:
            self._active[run_id] = active
        try:
            self.pipeline.runs.save_run_summary(run)
            active.future = self._executor.submit(self._run, resolved, active)
        except Exception:
            with self._lock:
                self._active.pop(run_id, None)
            self.registry.finish_run(config_id, run_id, datetime.now(UTC), None)
            raise
        logger.info("import run queued", extra={"run_id": run_id, "config_id": config_id, "trigger": trigger})
        return run_id

    def _run(self, config: ImportConfig, active: _ActiveRun) -> ImportRun:
        run = active.run
        try:
            return self.pipeline.run(config, run, active.cancel_event)
        finally:
            finished = run.finished_at or datetime.now(UTC)
            try:
                self.registry.finish_run(config.id, run.run_id, finished, next_run_at(config.schedule, finished, self.timezone))
            finally:
                with self._lock:
                    self._active.pop(run.run_id, None)

    def get_run(self, run_id: str) -> Optional[ImportRun]:
        with self._lock:
            active = self._active.get(run_id)
        if active is not None:
            return active.run.model_copy(deep=True)
        return self.pipeline.runs.get(run_id)

    def list_runs(self, config_id: Optional[int] = None, dealer_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.pipeline.runs.list(config_id=config_id, dealer_id=dealer_id, limit=limit)

    def cancel(self, run_id: str) -> bool:
        """Requests a stop at the next batch boundary; False when the run is not active."""
        with self._lock:
            active = self._active.get(run_id)
        if active is None or active.run.is_terminal:
            return False
        active.run.cancel_requested = True
        active.cancel_event.set()
        logger.info("import run cancellation requested", extra={"run_id": run_id})
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[ImportRun]:
        with self._lock:
            active = self._active.get(run_id)
        if active is not None and active.future is not None:
            active.future.result(timeout=timeout)
        return self.get_run(run_id)

    def preview(self, config_id: int, source_ref: Optional[str] = None, sample_size: Optional[int] = None) -> PreviewResult:
        config = self.resolve(self.registry.get(config_id))
        return self.pipeline.preview(config, source_ref, sample_size)

    def probe(self, config_id: int) -> dict:
        config = self.resolve(self.registry.get(config_id))
        return self.pipeline.connector_for(config).probe(config)

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            with self._lock:
                for active in self._active.values():
                    active.cancel_event.set()
        self._executor.shutdown(wait=wait)
