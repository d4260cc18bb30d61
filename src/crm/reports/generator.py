"""Report generation from saved definitions, and CSV/XLSX export.

A definition names an entity, the fields to select (or group-by fields plus
aggregations), filters, sort order and a row limit. Field names are checked
against a per-entity whitelist before any SQL is built.
"""

from __future__ import annotations

import csv
import io
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from sqlalchemy import String, cast, func, select

from src.crm.core.database import SessionFactory
from src.crm.core.errors import ValidationError
from src.crm.core.timeutils import utcnow
from src.crm.models.events import EventModel
from src.crm.models.payments import DonationModel
from src.crm.models.shared import Contact
from src.crm.reports.schemas import (
    ReportDefinition,
    ReportEntity,
    ReportFilter,
    ReportFormat,
    ReportResult,
)

logger = structlog.get_logger(__name__)

_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")

MIME_TYPES = {
    ReportFormat.CSV: "text/csv",
    ReportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


@dataclass(frozen=True)
class FieldSpec:
    label: str
    type: str  # string, number, currency, date, boolean
    column: Any


ENTITY_MODELS: dict[ReportEntity, Any] = {
    ReportEntity.CONTACTS: Contact,
    ReportEntity.DONATIONS: DonationModel,
    ReportEntity.EVENTS: EventModel,
}

FIELD_SPECS: dict[ReportEntity, dict[str, FieldSpec]] = {
    ReportEntity.CONTACTS: {
        "id": FieldSpec("Contact ID", "string", Contact.id),
        "first_name": FieldSpec("First Name", "string", Contact.first_name),
        "last_name": FieldSpec("Last Name", "string", Contact.last_name),
        "email": FieldSpec("Email", "string", Contact.email),
        "phone": FieldSpec("Phone", "string", Contact.phone),
        "mobile_phone": FieldSpec("Mobile Phone", "string", Contact.mobile_phone),
        "do_not_email": FieldSpec("Do Not Email", "boolean", Contact.do_not_email),
        "do_not_text": FieldSpec("Do Not Text", "boolean", Contact.do_not_text),
        "created_at": FieldSpec("Created Date", "date", Contact.created_at),
    },
    ReportEntity.DONATIONS: {
        "id": FieldSpec("Donation ID", "string", DonationModel.id),
        "donation_number": FieldSpec("Donation Number", "string", DonationModel.donation_number),
        "amount": FieldSpec("Amount", "currency", DonationModel.amount),
        "currency": FieldSpec("Currency", "string", DonationModel.currency),
        "payment_method": FieldSpec("Payment Method", "string", DonationModel.payment_method),
        "payment_status": FieldSpec("Payment Status", "string", DonationModel.payment_status),
        "reconciliation_status": FieldSpec(
            "Reconciliation Status", "string", DonationModel.reconciliation_status
        ),
        "donation_date": FieldSpec("Donation Date", "date", DonationModel.donation_date),
        "created_at": FieldSpec("Created Date", "date", DonationModel.created_at),
    },
    ReportEntity.EVENTS: {
        "id": FieldSpec("Event ID", "string", EventModel.id),
        "name": FieldSpec("Event Name", "string", EventModel.name),
        "status": FieldSpec("Status", "string", EventModel.status),
        "location_name": FieldSpec("Location", "string", EventModel.location_name),
        "start_date": FieldSpec("Start Date", "date", EventModel.start_date),
        "end_date": FieldSpec("End Date", "date", EventModel.end_date),
        "created_at": FieldSpec("Created Date", "date", EventModel.created_at),
    },
}


# ── Filter Building ─────────────────────────────────────────────────────────


def _coerce(spec: FieldSpec, value: Any) -> Any:
    """Convert a JSON filter value to the column's Python type."""
    if value is None or not isinstance(value, str):
        return value
    text_value = value.strip()
    try:
        if spec.type in ("number", "currency"):
            return Decimal(text_value)
        if spec.type == "date":
            parsed = datetime.fromisoformat(text_value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid filter value: {value}")
    if spec.type == "boolean":
        return text_value.lower() in ("true", "1", "yes")
    if spec.column.key == "id":
        try:
            return uuid.UUID(text_value)
        except ValueError:
            raise ValidationError(f"Invalid filter value: {value}")
    return value


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return []


def build_condition(spec: FieldSpec, report_filter: ReportFilter):
    """SQL condition for one filter; None when the filter has no usable value."""
    column = spec.column
    value = report_filter.value
    operator = report_filter.operator

    if operator == "ne":
        if value is None:
            return None
        if value == "":
            return func.coalesce(cast(column, String), "") != ""
        return column != _coerce(spec, value)

    if operator in ("eq", "gt", "gte", "lt", "lte", "like"):
        if value is None or value == "":
            return None
        if operator == "like":
            return cast(column, String).ilike(f"%{value}%")
        coerced = _coerce(spec, value)
        return {
            "eq": lambda: column == coerced,
            "gt": lambda: column > coerced,
            "gte": lambda: column >= coerced,
            "lt": lambda: column < coerced,
            "lte": lambda: column <= coerced,
        }[operator]()

    if operator == "in":
        items = _as_list(value)
        return column.in_([_coerce(spec, item) for item in items]) if items else None

    if operator == "between":
        items = _as_list(value)
        if len(items) != 2:
            return None
        return column.between(_coerce(spec, items[0]), _coerce(spec, items[1]))

    raise ValidationError(f"Invalid filter operator: {operator}")


# ── Generator ───────────────────────────────────────────────────────────────


class ReportGenerator:
    """Run report definitions against the CRM tables of one organization.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def generate(self, organization_id: str, definition: ReportDefinition) -> ReportResult:
        specs = FIELD_SPECS[definition.entity]
        model = ENTITY_MODELS[definition.entity]

        select_parts = []
        if definition.group_by:
            for field in definition.group_by:
                if field not in specs:
                    raise ValidationError(f"Invalid group by field: {field}")
                select_parts.append(specs[field].column.label(field))
        elif definition.fields:
            invalid = [field for field in definition.fields if field not in specs]
            if invalid:
                raise ValidationError(f"Invalid fields: {', '.join(invalid)}")
            select_parts.extend(specs[field].column.label(field) for field in definition.fields)

        for agg in definition.aggregations:
            if agg.field not in specs:
                raise ValidationError(f"Invalid aggregation field: {agg.field}")
            select_parts.append(getattr(func, agg.function)(specs[agg.field].column).label(agg.key))

        if not select_parts:
            raise ValidationError("At least one field or aggregation must be selected")

        conditions = [model.organization_id == uuid.UUID(organization_id)]
        for report_filter in definition.filters:
            if report_filter.field not in specs:
                raise ValidationError(f"Invalid filter field: {report_filter.field}")
            condition = build_condition(specs[report_filter.field], report_filter)
            if condition is not None:
                conditions.append(condition)

        stmt = select(*select_parts).select_from(model).where(*conditions)
        if definition.group_by:
            stmt = stmt.group_by(*(specs[field].column for field in definition.group_by))
        for sort in definition.sort:
            if sort.field not in specs:
                raise ValidationError(f"Invalid sort field: {sort.field}")
            column = specs[sort.field].column
            stmt = stmt.order_by(column.desc() if sort.direction == "desc" else column.asc())
        if definition.limit:
            stmt = stmt.limit(definition.limit)

        async for session in self._session_factory():
            rows = [dict(row._mapping) for row in (await session.execute(stmt)).all()]
            if definition.group_by:
                total = len(rows)
            else:
                total = (
                    await session.execute(
                        select(func.count()).select_from(model).where(*conditions)
                    )
                ).scalar_one()

        logger.debug(
            "reports.generated",
            entity=definition.entity.value,
            rows=len(rows),
            total=total,
        )
        return ReportResult(definition=definition, data=rows, total_count=total, generated_at=utcnow())


# ── Export ──────────────────────────────────────────────────────────────────


def _column_label(definition: ReportDefinition, key: str) -> str:
    specs = FIELD_SPECS[definition.entity]
    if key in specs:
        return specs[key].label
    return key.replace("_", " ").upper()


def _cell_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)


def export_report(result: ReportResult, fmt: ReportFormat) -> bytes:
    """Serialize report rows; CSV headers are field keys, XLSX headers are labels."""
    columns = result.definition.columns

    if fmt == ReportFormat.XLSX:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = _INVALID_SHEET_CHARS.sub(" ", result.definition.name or "Report")[:31]
        sheet.append([_column_label(result.definition, key) for key in columns])
        for row in result.data:
            sheet.append([_cell_value(row.get(key)) for key in columns])
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        for index in range(1, len(columns) + 1):
            sheet.column_dimensions[get_column_letter(index)].width = 20
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in result.data:
        writer.writerow([_csv_value(row.get(key)) for key in columns])
    return buffer.getvalue().encode("utf-8")
