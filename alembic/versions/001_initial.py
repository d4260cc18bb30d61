"""Initial CRM schema: core entities, schedulers, webhooks, payments, reconciliation.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def _org(nullable: bool = False) -> sa.Column:
    return sa.Column("organization_id", UUID(as_uuid=True), nullable=nullable)


def upgrade() -> None:
    # ── Core entities ──────────────────────────────────────────────────────
    op.create_table(
        "users",
        _id(),
        _org(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "contacts",
        _id(),
        _org(),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("mobile_phone", sa.String(50), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("do_not_email", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("do_not_text", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_contacts_organization_id", "contacts", ["organization_id"])

    # ── Events & reminders ─────────────────────────────────────────────────
    op.create_table(
        "events",
        _id(),
        _org(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("location_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(30), server_default=sa.text("'planned'"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_events_organization_id", "events", ["organization_id"])

    op.create_table(
        "event_registrations",
        _id(),
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "registration_status",
            sa.String(30),
            server_default=sa.text("'registered'"),
            nullable=False,
        ),
        _created_at(),
    )
    op.create_index("ix_event_registrations_event_id", "event_registrations", ["event_id"])

    op.create_table(
        "event_reminder_automations",
        _id(),
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("timing_type", sa.String(20), nullable=False),
        sa.Column("relative_minutes_before", sa.Integer(), nullable=True),
        sa.Column("absolute_send_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("send_email", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("send_sms", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(64), server_default=sa.text("'UTC'"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_status", sa.String(20), nullable=True),
        sa.Column("attempt_summary", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        sa.Column("modified_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_event_reminder_automations_event_id", "event_reminder_automations", ["event_id"]
    )
    # The worker only ever scans active, unattempted rows in due order
    op.create_index(
        "ix_event_reminder_automations_pending",
        "event_reminder_automations",
        ["due_at"],
        postgresql_where=sa.text("attempted_at IS NULL AND is_active"),
    )

    op.create_table(
        "event_reminder_deliveries",
        _id(),
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("registration_id", UUID(as_uuid=True), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("recipient", sa.String(255), nullable=True),
        sa.Column("delivery_status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("message_preview", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(20), nullable=False),
        sa.Column("automation_id", UUID(as_uuid=True), nullable=True),
        sa.Column("sent_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_event_reminder_deliveries_event_id", "event_reminder_deliveries", ["event_id"]
    )

    # ── Outgoing webhooks ──────────────────────────────────────────────────
    op.create_table(
        "webhook_endpoints",
        _id(),
        _org(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("secret", sa.String(100), nullable=False),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_delivery_status", sa.String(20), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_webhook_endpoints_organization_id", "webhook_endpoints", ["organization_id"])

    op.create_table(
        "webhook_deliveries",
        _id(),
        sa.Column(
            "webhook_endpoint_id",
            UUID(as_uuid=True),
            sa.ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_webhook_deliveries_webhook_endpoint_id", "webhook_deliveries", ["webhook_endpoint_id"]
    )
    op.create_index("ix_webhook_deliveries_next_retry_at", "webhook_deliveries", ["next_retry_at"])

    # ── Follow-ups ─────────────────────────────────────────────────────────
    op.create_table(
        "follow_ups",
        _id(),
        _org(),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("scheduled_time", sa.Time(), nullable=True),
        sa.Column("frequency", sa.String(20), server_default=sa.text("'once'"), nullable=False),
        sa.Column("frequency_end_date", sa.Date(), nullable=True),
        sa.Column("method", sa.String(30), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'scheduled'"), nullable=False),
        sa.Column("assigned_to", UUID(as_uuid=True), nullable=True),
        sa.Column("reminder_minutes_before", sa.Integer(), nullable=True),
        sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_notes", sa.Text(), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        sa.Column("modified_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_follow_ups_organization_id", "follow_ups", ["organization_id"])
    op.create_index("ix_follow_ups_entity", "follow_ups", ["entity_type", "entity_id"])

    op.create_table(
        "follow_up_notifications",
        _id(),
        _org(),
        sa.Column(
            "follow_up_id",
            UUID(as_uuid=True),
            sa.ForeignKey("follow_ups.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_follow_up_notifications_scheduled_for", "follow_up_notifications", ["scheduled_for"]
    )

    # ── Reports ────────────────────────────────────────────────────────────
    op.create_table(
        "saved_reports",
        _id(),
        _org(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity", sa.String(30), nullable=False),
        sa.Column("report_definition", sa.JSON(), nullable=False),
        sa.Column("is_public", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_saved_reports_organization_id", "saved_reports", ["organization_id"])

    op.create_table(
        "scheduled_reports",
        _id(),
        _org(),
        sa.Column(
            "saved_report_id",
            UUID(as_uuid=True),
            sa.ForeignKey("saved_reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("format", sa.String(10), server_default=sa.text("'csv'"), nullable=False),
        sa.Column("frequency", sa.String(20), nullable=False),
        sa.Column("timezone", sa.String(64), server_default=sa.text("'UTC'"), nullable=False),
        sa.Column("hour", sa.Integer(), server_default=sa.text("9"), nullable=False),
        sa.Column("minute", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", UUID(as_uuid=True), nullable=True),
        sa.Column("modified_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_scheduled_reports_organization_id", "scheduled_reports", ["organization_id"])
    op.create_index("ix_scheduled_reports_next_run_at", "scheduled_reports", ["next_run_at"])

    op.create_table(
        "scheduled_report_runs",
        _id(),
        sa.Column(
            "scheduled_report_id",
            UUID(as_uuid=True),
            sa.ForeignKey("scheduled_reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("rows_count", sa.Integer(), nullable=True),
        sa.Column("file_format", sa.String(10), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_scheduled_report_runs_scheduled_report_id",
        "scheduled_report_runs",
        ["scheduled_report_id"],
    )

    # ── Payments ───────────────────────────────────────────────────────────
    op.create_table(
        "donations",
        _id(),
        _org(nullable=True),
        sa.Column("donation_number", sa.String(50), nullable=False),
        sa.Column("contact_id", UUID(as_uuid=True), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default=sa.text("'USD'"), nullable=False),
        sa.Column("donation_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_method", sa.String(30), nullable=True),
        sa.Column(
            "payment_status", sa.String(20), server_default=sa.text("'pending'"), nullable=False
        ),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_charge_id", sa.String(255), nullable=True),
        sa.Column("stripe_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("net_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "reconciliation_status",
            sa.String(20),
            server_default=sa.text("'unreconciled'"),
            nullable=False,
        ),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_by", UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_donations_organization_id", "donations", ["organization_id"])
    op.create_index(
        "ix_donations_stripe_payment_intent_id", "donations", ["stripe_payment_intent_id"]
    )

    op.create_table(
        "payment_webhook_receipts",
        _id(),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column(
            "processing_status", sa.String(20), server_default=sa.text("'received'"), nullable=False
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_payment_webhook_receipts_provider_event"
        ),
    )

    # ── Reconciliation ─────────────────────────────────────────────────────
    op.create_table(
        "stripe_balance_transactions",
        _id(),
        sa.Column("stripe_balance_transaction_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_source_id", sa.String(255), nullable=True),
        sa.Column("stripe_source_type", sa.String(50), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("net", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(30), nullable=True),
        sa.Column("transaction_type", sa.String(50), nullable=False),
        sa.Column("stripe_description", sa.Text(), nullable=True),
        sa.Column("stripe_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stripe_available_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciliation_id", UUID(as_uuid=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "payment_reconciliations",
        _id(),
        sa.Column("reconciliation_number", sa.String(30), nullable=False, unique=True),
        sa.Column(
            "reconciliation_type", sa.String(20), server_default=sa.text("'manual'"), nullable=False
        ),
        sa.Column("status", sa.String(20), server_default=sa.text("'in_progress'"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stripe_balance_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("stripe_charge_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("stripe_refund_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("stripe_total_fees", sa.Numeric(14, 2), nullable=True),
        sa.Column("donations_total_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("donations_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("matched_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "unmatched_stripe_count", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column(
            "unmatched_donations_count", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("discrepancy_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("initiated_by", UUID(as_uuid=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "reconciliation_items",
        _id(),
        sa.Column(
            "reconciliation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("payment_reconciliations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("donation_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_charge_id", sa.String(255), nullable=True),
        sa.Column("stripe_balance_transaction_id", sa.String(255), nullable=True),
        sa.Column("stripe_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("stripe_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("stripe_net", sa.Numeric(12, 2), nullable=True),
        sa.Column("stripe_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_status", sa.String(30), nullable=True),
        sa.Column("donation_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("donation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("donation_status", sa.String(20), nullable=True),
        sa.Column("match_status", sa.String(30), nullable=False),
        sa.Column("match_confidence", sa.String(10), nullable=True),
        sa.Column("has_discrepancy", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("discrepancy_type", sa.String(50), nullable=True),
        sa.Column("discrepancy_amount", sa.Numeric(12, 2), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_reconciliation_items_reconciliation_id", "reconciliation_items", ["reconciliation_id"]
    )

    op.create_table(
        "payment_discrepancies",
        _id(),
        sa.Column(
            "reconciliation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("payment_reconciliations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reconciliation_item_id", UUID(as_uuid=True), nullable=True),
        sa.Column("discrepancy_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("donation_id", UUID(as_uuid=True), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_charge_id", sa.String(255), nullable=True),
        sa.Column("expected_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("actual_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("difference_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'open'"), nullable=False),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_payment_discrepancies_reconciliation_id", "payment_discrepancies", ["reconciliation_id"]
    )


def downgrade() -> None:
    for table in (
        "payment_discrepancies",
        "reconciliation_items",
        "payment_reconciliations",
        "stripe_balance_transactions",
        "payment_webhook_receipts",
        "donations",
        "scheduled_report_runs",
        "scheduled_reports",
        "saved_reports",
        "follow_up_notifications",
        "follow_ups",
        "webhook_deliveries",
        "webhook_endpoints",
        "event_reminder_deliveries",
        "event_reminder_automations",
        "event_registrations",
        "events",
        "contacts",
        "users",
    ):
        op.drop_table(table)
