from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

SourceKind = Literal["local_upload", "ftp", "sftp", "http"]
FileKind = Literal["csv", "fixed_width", "json"]
FieldType = Literal["string", "integer", "decimal", "boolean", "date"]
DuplicateHandling = Literal["skip", "update", "replace"]
Frequency = Literal["manual", "hourly", "daily", "weekly"]
RunStatus = Literal["running", "completed", "failed", "aborted"]
ScheduleState = Literal["idle", "due", "running"]

TERMINAL_STATUSES = ("completed", "failed", "aborted")

# Attribute set of the canonical vehicle record all imports converge to.
CANONICAL_FIELDS: tuple[str, ...] = (
    "vin",
    "stock_number",
    "make",
    "model",
    "series",
    "year",
    "body_style",
    "new_used",
    "certified",
    "color",
    "interior_color",
    "engine_type",
    "displacement",
    "transmission",
    "odometer",
    "price",
    "msrp",
    "other_price",
    "dealer_discount",
    "consumer_rebate",
    "dealer_accessories",
    "total_customer_savings",
    "total_dealer_rebate",
    "features",
    "photo_url_list",
    "status",
    "date_in_stock",
    "reference_dealer_id",
)

_DEFAULT_PORTS = {"ftp": 21, "sftp": 22}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConnectionSettings(BaseModel):
    source_kind: SourceKind = "local_upload"
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    remote_directory: str = "/"
    file_pattern: str = "*"
    url: Optional[str] = None
    use_tls: bool = False

    @model_validator(mode="after")
    def _check_remote(self) -> "ConnectionSettings":
        if self.source_kind in ("ftp", "sftp") and not self.host:
            raise ValueError(f"host is required for {self.source_kind} sources")
        if self.source_kind == "http" and not (self.url or self.host):
            raise ValueError("url or host is required for http sources")
        return self

    @property
    def resolved_port(self) -> Optional[int]:
        if self.port:
            return self.port
        if self.source_kind == "http":
            return 443 if self.use_tls else 80
        return _DEFAULT_PORTS.get(self.source_kind)

    @property
    def is_remote(self) -> bool:
        return self.source_kind != "local_upload"


class FileFormatSettings(BaseModel):
    file_kind: FileKind = "csv"
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    has_header: bool = True
    encoding: str = "utf-8"
    date_format: str = "%Y-%m-%d"
    column_names: list[str] = Field(default_factory=list)
    column_widths: list[int] = Field(default_factory=list)
    record_path: Optional[str] = None
    multi_value_delimiter: str = "|"

    @field_validator("delimiter", mode="before")
    @classmethod
    def _unescape_delimiter(cls, value: Any) -> Any:
        if value in ("\\t", "tab", "TAB"):
            return "\t"
        return value

    @field_validator("date_format")
    @classmethod
    def _moment_tokens(cls, value: str) -> str:
        return to_strftime(value)

    @model_validator(mode="after")
    def _check_layout(self) -> "FileFormatSettings":
        if self.file_kind == "fixed_width" and not self.column_widths:
            raise ValueError("column_widths is required for fixed_width files")
        if self.column_widths and any(w <= 0 for w in self.column_widths):
            raise ValueError("column_widths must be positive")
        if not self.has_header and self.file_kind != "json" and not self.column_names:
            raise ValueError("column_names is required when has_header is false")
        return self


class FieldMapping(BaseModel):
    source_field: str = Field(min_length=1)
    target_field: str = Field(min_length=1)
    field_type: FieldType = "string"
    field_order: int = 0
    is_required: bool = False
    default_value: Optional[str] = None
    transformation_rule: Optional[Any] = None

    @field_validator("target_field")
    @classmethod
    def _canonical_target(cls, value: str) -> str:
        value = value.strip()
        if value not in CANONICAL_FIELDS:
            raise ValueError(f"'{value}' is not a canonical vehicle field")
        return value

    @field_validator("transformation_rule", mode="before")
    @classmethod
    def _decode_rule(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text[0] in "[{":
                try:
                    return json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"transformation_rule is not valid JSON: {exc}") from exc
            return text
        return value

    @field_validator("default_value", mode="before")
    @classmethod
    def _stringify_default(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class ProcessingPolicy(BaseModel):
    duplicate_handling: DuplicateHandling = "skip"
    batch_size: int = Field(default=1000, gt=0)
    max_errors: int = Field(default=100, ge=0)
    validate_data: bool = True
    archive_processed_files: bool = True
    archive_directory: str = "processed"


class ScheduleSettings(BaseModel):
    frequency: Frequency = "manual"
    time_hour: int = Field(default=0, ge=0, le=23)
    time_minute: int = Field(default=0, ge=0, le=59)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    is_active: bool = True


class ImportConfig(BaseModel):
    id: Optional[int] = None
    dealer_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    is_active: bool = True
    connection: Optional[ConnectionSettings] = None
    file_format: FileFormatSettings = Field(default_factory=FileFormatSettings)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    processing: ProcessingPolicy = Field(default_factory=ProcessingPolicy)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @property
    def source_kind(self) -> str:
        return self.connection.source_kind if self.connection else "local_upload"

    def duplicate_field_orders(self) -> list[int]:
        seen: set[int] = set()
        dupes: list[int] = []
        for mapping in self.field_mappings:
            if mapping.field_order in seen and mapping.field_order not in dupes:
                dupes.append(mapping.field_order)
            seen.add(mapping.field_order)
        return dupes


class RowIssue(BaseModel):
    row_number: int
    field: Optional[str] = None
    kind: Literal["mapping", "validation", "storage", "format"] = "mapping"
    message: str


class RunCounts(BaseModel):
    read: int = 0
    mapped: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    warnings: int = 0
    batches: int = 0


class ImportRun(BaseModel):
    run_id: str
    config_id: int
    dealer_id: str
    trigger: Literal["manual", "scheduled"] = "manual"
    source_ref: Optional[str] = None
    status: RunStatus = "running"
    counts: RunCounts = Field(default_factory=RunCounts)
    errors: list[RowIssue] = Field(default_factory=list)
    warnings: list[RowIssue] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    detail: Optional[str] = None
    archived: Optional[bool] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RunState(BaseModel):
    config_id: int
    state: ScheduleState = "idle"
    current_run_id: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None


class PreviewRow(BaseModel):
    row_number: int
    record: dict[str, Any] = Field(default_factory=dict)
    source_view: dict[str, Optional[str]] = Field(default_factory=dict)
    intent: Optional[str] = None
    is_valid: bool = True
    errors: list[RowIssue] = Field(default_factory=list)
    warnings: list[RowIssue] = Field(default_factory=list)


class PreviewResult(BaseModel):
    config_id: int
    source_ref: Optional[str] = None
    columns: list[str] = Field(default_factory=list)
    rows: list[PreviewRow] = Field(default_factory=list)
    rows_read: int = 0
    valid_rows: int = 0


_MOMENT_TOKENS = (
    ("YYYY", "%Y"),
    ("YY", "%y"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("mm", "%M"),
    ("ss", "%S"),
)


def to_strftime(fmt: str) -> str:
    """Accepts strftime patterns as-is and translates moment-style ones (YYYY-MM-DD)."""
    if "%" in fmt:
        return fmt
    out = fmt
    for token, directive in _MOMENT_TOKENS:
        out = out.replace(token, directive)
    return out
