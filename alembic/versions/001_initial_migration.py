"""Initial migration - users, appointments, webhook ledger and audit log.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Needed for the integer equality part of the exclusion constraint
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # Create users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("open_id", sa.VARCHAR(length=64), nullable=True),
        sa.Column("email", sa.VARCHAR(length=320), nullable=True),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("phone", sa.VARCHAR(length=50), nullable=True),
        sa.Column("role", sa.VARCHAR(length=20), server_default="user", nullable=False),
        sa.Column("specialization", sa.VARCHAR(length=255), nullable=True),
        sa.Column("ahpra_number", sa.VARCHAR(length=50), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("last_signed_in_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "role IN ('user', 'admin', 'patient', 'clinician')",
            name="users_role_check",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("open_id"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    # Create appointments table
    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("clinician_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), server_default="30", nullable=False),
        sa.Column("ends_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column(
            "appointment_type", sa.VARCHAR(length=20), server_default="initial", nullable=False
        ),
        sa.Column("status", sa.VARCHAR(length=20), server_default="scheduled", nullable=False),
        sa.Column(
            "payment_status", sa.VARCHAR(length=20), server_default="unpaid", nullable=False
        ),
        sa.Column("stripe_payment_intent_id", sa.VARCHAR(length=255), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.VARCHAR(length=255), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("video_room_url", sa.VARCHAR(length=500), nullable=True),
        sa.Column("google_calendar_event_id", sa.VARCHAR(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("deleted_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint("duration > 0", name="appointments_duration_check"),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'scheduled', 'in_progress', 'completed', "
            "'cancelled', 'no_show')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "appointment_type IN ('initial', 'follow_up', 'emergency')",
            name="appointments_type_check",
        ),
        sa.CheckConstraint(
            "payment_status IN ('unpaid', 'paid', 'failed', 'refunded')",
            name="appointments_payment_status_check",
        ),
        sa.ForeignKeyConstraint(["patient_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["clinician_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("ix_appointments_clinician_id", "appointments", ["clinician_id"])
    op.create_index(
        "ix_appointments_stripe_payment_intent_id", "appointments", ["stripe_payment_intent_id"]
    )
    op.create_index(
        "ix_appointments_clinician_window",
        "appointments",
        ["clinician_id", "scheduled_at", "ends_at"],
    )

    # No two reserving appointments of one clinician may overlap
    op.execute(
        """
        ALTER TABLE appointments
        ADD CONSTRAINT appointments_no_clinician_overlap
        EXCLUDE USING gist (
            clinician_id WITH =,
            tstzrange(scheduled_at, ends_at, '[)') WITH &&
        )
        WHERE (
            status IN ('pending_payment', 'scheduled', 'in_progress')
            AND deleted_at IS NULL
        );
        """
    )

    # Create processed webhook events ledger
    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.VARCHAR(length=40), nullable=False),
        sa.Column("event_id", sa.VARCHAR(length=255), nullable=False),
        sa.Column("event_type", sa.VARCHAR(length=255), nullable=False),
        sa.Column(
            "status", sa.VARCHAR(length=20), server_default="processing", nullable=False
        ),
        sa.Column("payload", postgresql.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="1", nullable=False),
        sa.Column(
            "received_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("processed_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="processed_webhook_events_status_check",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_processed_webhook_events_provider_event"
        ),
    )

    # Create audit log
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.VARCHAR(length=100), nullable=False),
        sa.Column("resource_type", sa.VARCHAR(length=50), nullable=False),
        sa.Column("resource_id", sa.VARCHAR(length=255), nullable=True),
        sa.Column("metadata", postgresql.JSON(), nullable=True),
        sa.Column("ip_address", sa.VARCHAR(length=64), server_default="system", nullable=False),
        sa.Column("user_agent", sa.VARCHAR(length=500), server_default="system", nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("ix_audit_logs_resource", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_table("processed_webhook_events")

    op.execute("ALTER TABLE appointments DROP CONSTRAINT appointments_no_clinician_overlap")
    op.drop_index("ix_appointments_clinician_window", table_name="appointments")
    op.drop_index("ix_appointments_stripe_payment_intent_id", table_name="appointments")
    op.drop_index("ix_appointments_clinician_id", table_name="appointments")
    op.drop_index("ix_appointments_patient_id", table_name="appointments")
    op.drop_table("appointments")

    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
