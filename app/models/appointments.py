"""Appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)

# Statuses that still occupy the clinician's calendar
ACTIVE_RESERVING_STATUSES = ("pending_payment", "scheduled", "in_progress")

metadata = MetaData()

appointments = Table(
    "appointments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Ownership / references
    Column(
        "patient_id",
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    Column(
        "clinician_id",
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    # Appointment window; ends_at is always scheduled_at + duration
    Column("scheduled_at", DateTime(timezone=True), nullable=False),
    Column("duration", Integer, nullable=False, server_default="30"),
    Column("ends_at", DateTime(timezone=True), nullable=False),
    Column("appointment_type", String(20), nullable=False, server_default="initial"),
    # Status management
    Column("status", String(20), nullable=False, server_default="scheduled"),
    # Payment sub-state
    Column("payment_status", String(20), nullable=False, server_default="unpaid"),
    Column("stripe_payment_intent_id", String(255), nullable=True, index=True),
    Column("stripe_checkout_session_id", String(255), nullable=True),
    Column("amount_paid", Integer, nullable=True),
    # Provisioning artifacts (null when provisioning failed)
    Column("video_room_url", String(500), nullable=True),
    Column("google_calendar_event_id", String(255), nullable=True),
    # Metadata
    Column("notes", Text, nullable=True),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    # Soft delete (healthcare compliance)
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    # Constraints
    CheckConstraint("duration > 0", name="appointments_duration_check"),
    CheckConstraint(
        "status IN ('pending_payment', 'scheduled', 'in_progress', 'completed', "
        "'cancelled', 'no_show')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "appointment_type IN ('initial', 'follow_up', 'emergency')",
        name="appointments_type_check",
    ),
    CheckConstraint(
        "payment_status IN ('unpaid', 'paid', 'failed', 'refunded')",
        name="appointments_payment_status_check",
    ),
    Index("ix_appointments_clinician_window", "clinician_id", "scheduled_at", "ends_at"),
)
