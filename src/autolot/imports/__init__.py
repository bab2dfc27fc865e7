from autolot.imports.field_mapper import FieldIssue, FieldMappingEngine, MappingResult
from autolot.imports.models import (
    CANONICAL_FIELDS,
    ConnectionSettings,
    FieldMapping,
    FileFormatSettings,
    ImportConfig,
    ImportRun,
    PreviewResult,
    ProcessingPolicy,
    RowIssue,
    RunCounts,
    RunState,
    ScheduleSettings,
)
from autolot.imports.resolver import Intent, resolve

__all__ = [
    "CANONICAL_FIELDS",
    "ConnectionSettings",
    "FieldIssue",
    "FieldMapping",
    "FieldMappingEngine",
    "FileFormatSettings",
    "ImportConfig",
    "ImportRun",
    "Intent",
    "MappingResult",
    "PreviewResult",
    "ProcessingPolicy",
    "RowIssue",
    "RunCounts",
    "RunState",
    "ScheduleSettings",
    "resolve",
]
