"""User model definition using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    true,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Identity provider subject (auth handled upstream)
    Column("open_id", String(64), nullable=True, unique=True),
    # Profile info
    Column("email", String(320), nullable=True, index=True),
    Column("full_name", Text),
    Column("phone", String(50)),
    Column("role", String(20), nullable=False, server_default="user", index=True),
    # Clinician details
    Column("specialization", String(255)),
    Column("ahpra_number", String(50)),
    # Account state
    Column("is_active", Boolean, nullable=False, server_default=true()),
    # Audit
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("last_signed_in_at", DateTime(timezone=True)),
    CheckConstraint(
        "role IN ('user', 'admin', 'patient', 'clinician')",
        name="users_role_check",
    ),
)
