"""Pydantic schemas for report definitions and scheduled report delivery."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.crm.core.ids import UUIDStr


class ReportEntity(str, Enum):
    CONTACTS = "contacts"
    DONATIONS = "donations"
    EVENTS = "events"


class ReportFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ── Report Definitions ──────────────────────────────────────────────────────


class ReportFilter(BaseModel):
    field: str
    operator: str = "eq"  # eq, ne, gt, gte, lt, lte, like, in, between
    value: Any = None


class ReportSort(BaseModel):
    field: str
    direction: str = Field(default="asc", pattern="^(asc|desc)$")


class ReportAggregation(BaseModel):
    field: str
    function: str = Field(..., pattern="^(sum|avg|count|min|max)$")
    alias: str | None = None

    @property
    def key(self) -> str:
        return self.alias or f"{self.function}_{self.field}"


class ReportDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    entity: ReportEntity
    fields: list[str] = Field(default_factory=list)
    filters: list[ReportFilter] = Field(default_factory=list)
    sort: list[ReportSort] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)
    group_by: list[str] = Field(default_factory=list, alias="groupBy")
    aggregations: list[ReportAggregation] = Field(default_factory=list)

    @property
    def columns(self) -> list[str]:
        """Output column keys: group-by fields, plain fields, then aggregates."""
        return self.group_by + self.fields + [agg.key for agg in self.aggregations]


class ReportResult(BaseModel):
    definition: ReportDefinition
    data: list[dict[str, Any]]
    total_count: int
    generated_at: datetime


class SavedReportRead(BaseModel):
    id: str
    organization_id: str
    name: str
    entity: ReportEntity
    report_definition: dict[str, Any]
    is_public: bool = False
    created_by: str | None = None


# ── Scheduled Reports ───────────────────────────────────────────────────────


class ScheduledReportCreate(BaseModel):
    saved_report_id: UUIDStr
    name: str | None = Field(default=None, max_length=255)
    recipients: list[str] = Field(default_factory=list)
    format: ReportFormat = ReportFormat.CSV
    frequency: ScheduleFrequency
    timezone: str | None = None
    hour: int | None = Field(default=None, ge=0, le=23)
    minute: int | None = Field(default=None, ge=0, le=59)
    day_of_week: int | None = None
    day_of_month: int | None = None
    is_active: bool | None = None


class ScheduledReportUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    recipients: list[str] | None = None
    format: ReportFormat | None = None
    frequency: ScheduleFrequency | None = None
    timezone: str | None = None
    hour: int | None = Field(default=None, ge=0, le=23)
    minute: int | None = Field(default=None, ge=0, le=59)
    day_of_week: int | None = None
    day_of_month: int | None = None
    is_active: bool | None = None


class ScheduledReportToggle(BaseModel):
    is_active: bool | None = None


class ScheduledReportRead(BaseModel):
    id: str
    organization_id: str
    saved_report_id: str
    name: str
    recipients: list[str] = Field(default_factory=list)
    format: ReportFormat
    frequency: ScheduleFrequency
    timezone: str
    hour: int
    minute: int
    day_of_week: int | None = None
    day_of_month: int | None = None
    is_active: bool
    next_run_at: datetime
    last_run_at: datetime | None = None
    processing_started_at: datetime | None = None
    last_error: str | None = None
    created_by: str | None = None
    modified_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ScheduledReportRunRead(BaseModel):
    id: str
    scheduled_report_id: str
    status: RunStatus
    recipients: list[str] = Field(default_factory=list)
    rows_count: int | None = None
    file_format: ReportFormat | None = None
    file_name: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
