import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, List, Optional

from autolot.config import ConnectorSettings, ImportSettings, settings
from autolot.data.repositories import RunRepository, VehicleRepository
from autolot.exceptions import ConfigError, FormatError, SourceConnectionError, ThresholdExceededError
from autolot.imports.archive import ArchiveManager
from autolot.imports.committer import BatchCommitter, BatchResult, ErrorBudget
from autolot.imports.connectors import SourceConnector, build_connector
from autolot.imports.field_mapper import FieldIssue, FieldMappingEngine, effective_mappings
from autolot.imports.models import ImportConfig, ImportRun, PreviewResult, PreviewRow, RowIssue
from autolot.imports.resolver import Intent, PendingBatchLookup, resolve

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[..., SourceConnector]


class _Cancelled(Exception):
    pass


def _issues(row_number: int, found: List[FieldIssue]) -> List[RowIssue]:
    return [RowIssue(row_number=row_number, field=i.field, kind=i.kind, message=i.message) for i in found]


class ImportPipeline:
    """
    One run end to end: connector -> mapper -> resolver -> committer -> archive.
    `run` never raises; every outcome is a terminal ImportRun whose summary is persisted.
    """

    def __init__(
        self,
        vehicles: VehicleRepository,
        runs: RunRepository,
        mapper: Optional[FieldMappingEngine] = None,
        connector_factory: ConnectorFactory = build_connector,
        upload_dir: Optional[Path] = None,
        import_settings: Optional[ImportSettings] = None,
        connector_settings: Optional[ConnectorSettings] = None,
    ):
        self.vehicles = vehicles
        self.runs = runs
        self.mapper = mapper or FieldMappingEngine()
        self.connector_factory = connector_factory
        self.upload_dir = upload_dir
        self.import_settings = import_settings or settings.imports
        self.connector_settings = connector_settings or settings.connectors

    def connector_for(self, config: ImportConfig) -> SourceConnector:
        return self.connector_factory(
            config.source_kind,
            upload_dir=self.upload_dir,
            connector_settings=self.connector_settings,
            chunk_size=config.processing.batch_size,
        )

    def run(self, config: ImportConfig, run: ImportRun, cancel_event: Optional[threading.Event] = None) -> ImportRun:
        policy = config.processing
        budget = ErrorBudget(policy.max_errors)
        error_cap = max(policy.max_errors, self.import_settings.min_error_list)
        committer = BatchCommitter(self.vehicles, config.dealer_id, budget)
        lookup = PendingBatchLookup(self.vehicles.find_id)
        source_name: Optional[str] = None
        connector: Optional[SourceConnector] = None

        log_ctx = {"run_id": run.run_id, "config_id": config.id, "dealer_id": config.dealer_id}
        logger.info("import run started", extra={**log_ctx, "trigger": run.trigger, "source_ref": run.source_ref})

        def keep(target: List[RowIssue], found: List[RowIssue]) -> None:
            room = error_cap - len(target)
            if room > 0:
                target.extend(found[:room])

        def flush(batch: List[Intent]) -> None:
            result = committer.commit(batch)
            self._apply_batch(run, result)
            keep(run.errors, result.errors)
            budget.check()
            if cancel_event is not None and cancel_event.is_set():
                raise _Cancelled()

        try:
            connector = self.connector_for(config)
            with connector.open(config, run.source_ref) as rows:
                source_name = rows.source_name
                run.source_ref = run.source_ref or source_name
                batch: List[Intent] = []
                for row_number, raw in rows:
                    run.counts.read += 1
                    result = self.mapper.map(raw, config.field_mappings, config.file_format, policy.validate_data)
                    if result.warnings:
                        run.counts.warnings += len(result.warnings)
                        keep(run.warnings, _issues(row_number, result.warnings))
                    if not result.is_valid:
                        run.counts.errored += 1
                        keep(run.errors, _issues(row_number, result.errors))
                        budget.charge()
                        budget.check()
                        if cancel_event is not None and cancel_event.is_set() and run.counts.read % policy.batch_size == 0:
                            if batch:
                                flush(batch)
                            raise _Cancelled()
                        continue

                    run.counts.mapped += 1
                    intent = resolve(result.record, policy, lookup, config.dealer_id, row_number)
                    lookup.add(config.dealer_id, intent)
                    batch.append(intent)
                    if len(batch) >= policy.batch_size:
                        flush(batch)
                        batch = []
                        lookup.clear()
                if batch:
                    flush(batch)
            run.status = "completed"
        except ThresholdExceededError as exc:
            run.status = "aborted"
            run.detail = str(exc)
        except _Cancelled:
            run.status = "aborted"
            run.detail = "Cancelled on request"
        except FormatError as exc:
            run.status = "failed"
            run.detail = f"Format error: {exc}"
            if exc.row_number is not None:
                keep(run.errors, [RowIssue(row_number=exc.row_number, kind="format", message=str(exc))])
        except (SourceConnectionError, ConfigError) as exc:
            run.status = "failed"
            run.detail = str(exc)
        except Exception as exc:
            logger.exception("import run crashed", extra=log_ctx)
            run.status = "failed"
            run.detail = f"Unexpected error: {exc}"

        run.finished_at = datetime.now(UTC)
        if run.status == "completed" and connector is not None:
            run.archived = ArchiveManager(connector).finalize(run, config, source_name)
        try:
            self.runs.save_run_summary(run)
        except Exception:
            logger.exception("failed to persist run summary", extra=log_ctx)

        logger.info(
            "import run finished",
            extra={**log_ctx, "status": run.status, "detail": run.detail, **run.counts.model_dump()},
        )
        return run

    @staticmethod
    def _apply_batch(run: ImportRun, result: BatchResult) -> None:
        run.counts.batches += 1
        run.counts.inserted += result.inserted
        run.counts.updated += result.updated
        run.counts.skipped += result.skipped
        run.counts.errored += result.errored

    def preview(self, config: ImportConfig, source_ref: Optional[str] = None, sample_size: Optional[int] = None) -> PreviewResult:
        """
        Dry run over the first rows: mapped records in field_order column order,
        per-row issues, the intent each row would get and its projected source view.
        Connection and format errors propagate to the caller.
        """
        size = sample_size or self.import_settings.preview_sample_size
        size = max(1, min(size, self.import_settings.max_preview_rows))
        policy = config.processing
        columns = [m.target_field for m in effective_mappings(config.field_mappings)]
        lookup = PendingBatchLookup(self.vehicles.find_id)
        preview = PreviewResult(config_id=config.id or 0, source_ref=source_ref, columns=columns)

        with self.connector_for(config).open(config, source_ref) as rows:
            preview.source_ref = source_ref or rows.source_name
            for row_number, raw in rows:
                preview.rows_read += 1
                result = self.mapper.map(raw, config.field_mappings, config.file_format, policy.validate_data)
                intent = None
                if result.is_valid:
                    intent = resolve(result.record, policy, lookup, config.dealer_id, row_number)
                    lookup.add(config.dealer_id, intent)
                    preview.valid_rows += 1
                preview.rows.append(
                    PreviewRow(
                        row_number=row_number,
                        record={c: result.record[c] for c in columns if c in result.record},
                        source_view=self.mapper.project(result.record, config.field_mappings, config.file_format),
                        intent=intent.action if intent else None,
                        is_valid=result.is_valid,
                        errors=_issues(row_number, result.errors),
                        warnings=_issues(row_number, result.warnings),
                    )
                )
                if len(preview.rows) >= size:
                    break
        return preview
