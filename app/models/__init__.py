"""Database models."""

from sqlalchemy import MetaData

from app.models.appointments import appointments
from app.models.appointments import metadata as appointments_metadata
from app.models.audit_logs import audit_logs
from app.models.audit_logs import metadata as audit_logs_metadata
from app.models.users import metadata as users_metadata
from app.models.users import users
from app.models.webhook_events import metadata as webhook_events_metadata
from app.models.webhook_events import processed_webhook_events

# Combined metadata for create_all (tables reference each other by name)
metadata = MetaData()
for _source in (
    users_metadata,
    appointments_metadata,
    webhook_events_metadata,
    audit_logs_metadata,
):
    for _table in _source.tables.values():
        _table.to_metadata(metadata)

__all__ = [
    "appointments",
    "audit_logs",
    "metadata",
    "processed_webhook_events",
    "users",
]
