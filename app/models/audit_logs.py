"""Append-only audit log table using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    func,
)

metadata = MetaData()

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Null for system actors (webhooks)
    Column("user_id", Integer, nullable=True, index=True),
    Column("action", String(100), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("resource_id", String(255), nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("ip_address", String(64), nullable=False, server_default="system"),
    Column("user_agent", String(500), nullable=False, server_default="system"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("ix_audit_logs_resource", "resource_type", "resource_id"),
)
