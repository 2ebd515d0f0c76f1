"""initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-02-02 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

booking_status = postgresql.ENUM("pending", "confirmed", "canceled", name="booking_status", create_type=False)


def upgrade() -> None:
    booking_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column(
            "role",
            sa.Enum("admin", "staff", "service", name="role_enum"),
            nullable=False,
            server_default="staff",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("messaging_uid", sa.String(length=128), nullable=True),
        sa.Column(
            "merged_into_patient_id",
            sa.String(length=64),
            sa.ForeignKey("patients.patient_id"),
            nullable=True,
        ),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_patients_patient_id", "patients", ["patient_id"], unique=True)
    op.create_index("ix_patients_messaging_uid", "patients", ["messaging_uid"])
    op.create_index("ix_patients_merged_into_patient_id", "patients", ["merged_into_patient_id"])

    op.create_table(
        "patient_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_id", sa.String(length=64), sa.ForeignKey("patients.patient_id"), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False, server_default="inbound"),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_patient_messages_patient_id", "patient_messages", ["patient_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_id", sa.String(length=64), sa.ForeignKey("patients.patient_id"), nullable=False),
        sa.Column("product_code", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_orders_patient_id", "orders", ["patient_id"])

    op.create_table(
        "booking_slots",
        sa.Column("slot_date", sa.Date(), primary_key=True),
        sa.Column("slot_time", sa.Time(), primary_key=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reserve_id", sa.String(length=64), nullable=False),
        sa.Column("patient_id", sa.String(length=64), sa.ForeignKey("patients.patient_id"), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("slot_time", sa.Time(), nullable=False),
        sa.Column("status", booking_status, nullable=False, server_default="pending"),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_by", sa.String(length=320), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_bookings_reserve_id", "bookings", ["reserve_id"], unique=True)
    op.create_index("ix_bookings_patient_id", "bookings", ["patient_id"])
    op.create_index("ix_bookings_slot", "bookings", ["slot_date", "slot_time"])
    op.create_index(
        "uq_bookings_one_active_per_patient",
        "bookings",
        ["patient_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'canceled'"),
        sqlite_where=sa.text("status <> 'canceled'"),
    )

    op.create_table(
        "patient_projections",
        sa.Column("patient_id", sa.String(length=64), sa.ForeignKey("patients.patient_id"), primary_key=True),
        sa.Column("reserve_id", sa.String(length=64), nullable=True),
        sa.Column("reserved_date", sa.Date(), nullable=True),
        sa.Column("reserved_time", sa.Time(), nullable=True),
        sa.Column("status", booking_status, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_patient_projections_reserve_id", "patient_projections", ["reserve_id"])

    op.create_table(
        "clinic_hours",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("slot_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_clinic_hours_day_of_week", "clinic_hours", ["day_of_week"])

    op.create_table(
        "clinic_closures",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )

    op.create_table(
        "clinic_overrides",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("slot_minutes", sa.Integer(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_clinic_overrides_date", "clinic_overrides", ["date"])

    op.create_table(
        "ledger_sync_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reserve_id", sa.String(length=64), nullable=False),
        sa.Column(
            "state",
            sa.Enum("pending", "done", "failed", name="ledger_sync_state"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("reason", sa.String(length=64), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_ledger_sync_tasks_reserve_id", "ledger_sync_tasks", ["reserve_id"], unique=True)
    op.create_index("ix_ledger_sync_tasks_state", "ledger_sync_tasks", ["state"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "state",
            sa.Enum("scanning", "comparing", "repairing", "reported", name="reconciliation_run_state"),
            nullable=False,
            server_default="scanning",
        ),
        sa.Column("triggered_by", sa.String(length=320), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("findings_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary_json", sa.JSON(), nullable=True),
    )

    op.create_table(
        "reconciliation_findings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.Integer(), sa.ForeignKey("reconciliation_runs.id"), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("divergence_kind", sa.String(length=64), nullable=False),
        sa.Column("action_taken", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("open", "resolved", name="reconciliation_finding_status"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("detail_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_reconciliation_findings_run_id", "reconciliation_findings", ["run_id"])
    op.create_index(
        "ix_reconciliation_findings_entity",
        "reconciliation_findings",
        ["entity_type", "entity_id", "divergence_kind", "status"],
    )

    op.create_table(
        "reconciliation_leases",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("holder", sa.String(length=64), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("actor", sa.String(length=320), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=120), nullable=True),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("reconciliation_leases")
    op.drop_index("ix_reconciliation_findings_entity", table_name="reconciliation_findings")
    op.drop_index("ix_reconciliation_findings_run_id", table_name="reconciliation_findings")
    op.drop_table("reconciliation_findings")
    op.drop_table("reconciliation_runs")
    op.drop_index("ix_ledger_sync_tasks_state", table_name="ledger_sync_tasks")
    op.drop_index("ix_ledger_sync_tasks_reserve_id", table_name="ledger_sync_tasks")
    op.drop_table("ledger_sync_tasks")
    op.drop_index("ix_clinic_overrides_date", table_name="clinic_overrides")
    op.drop_table("clinic_overrides")
    op.drop_table("clinic_closures")
    op.drop_index("ix_clinic_hours_day_of_week", table_name="clinic_hours")
    op.drop_table("clinic_hours")
    op.drop_index("ix_patient_projections_reserve_id", table_name="patient_projections")
    op.drop_table("patient_projections")
    op.drop_index("uq_bookings_one_active_per_patient", table_name="bookings")
    op.drop_index("ix_bookings_slot", table_name="bookings")
    op.drop_index("ix_bookings_patient_id", table_name="bookings")
    op.drop_index("ix_bookings_reserve_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("booking_slots")
    op.drop_index("ix_orders_patient_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_patient_messages_patient_id", table_name="patient_messages")
    op.drop_table("patient_messages")
    op.drop_index("ix_patients_merged_into_patient_id", table_name="patients")
    op.drop_index("ix_patients_messaging_uid", table_name="patients")
    op.drop_index("ix_patients_patient_id", table_name="patients")
    op.drop_table("patients")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    sa.Enum(name="reconciliation_finding_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="reconciliation_run_state").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="ledger_sync_state").drop(op.get_bind(), checkfirst=True)
    booking_status.drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="role_enum").drop(op.get_bind(), checkfirst=True)
