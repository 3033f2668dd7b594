"""Processed webhook events ledger using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

processed_webhook_events = Table(
    "processed_webhook_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(40), nullable=False),
    Column("event_id", String(255), nullable=False),
    Column("event_type", String(255), nullable=False),
    Column("status", String(20), nullable=False, server_default="processing"),
    Column("payload", JSON, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("attempts", Integer, nullable=False, server_default="1"),
    Column("received_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    # One row per delivered event; concurrent inserts collide here
    UniqueConstraint("provider", "event_id", name="uq_processed_webhook_events_provider_event"),
    CheckConstraint(
        "status IN ('processing', 'completed', 'failed')",
        name="processed_webhook_events_status_check",
    ),
)
