"""Append-only audit trail for compliance tracking."""

from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Request
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_logs import audit_logs

logger = structlog.get_logger(__name__)


class AuditActions:
    """Action vocabulary recorded in the audit trail."""

    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_COMPLETED = "appointment.completed"
    APPOINTMENT_NO_SHOW = "appointment.no_show"

    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"


@dataclass(frozen=True)
class RequestContext:
    """Where a state change came from."""

    ip_address: str = "system"
    user_agent: str = "system"

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        """Take the first forwarded hop, else the socket peer."""
        forwarded = request.headers.get("x-forwarded-for", "")
        ip_address = forwarded.split(",")[0].strip() if forwarded else ""
        if not ip_address:
            ip_address = request.client.host if request.client else "unknown"
        return cls(
            ip_address=ip_address,
            user_agent=request.headers.get("user-agent") or "unknown",
        )


SYSTEM_CONTEXT = RequestContext()


class AuditService:
    """Write audit entries inside the caller's transaction."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def log(
        self,
        action: str,
        resource_type: str,
        resource_id: int | str | None = None,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> None:
        """
        Append one audit entry.

        The entry is committed together with the state change it describes;
        the caller owns the commit.

        Args:
            action: One of ``AuditActions``
            resource_type: Kind of resource touched (e.g. ``appointment``)
            resource_id: Identifier of the resource, if any
            user_id: Acting user; None for system actors
            metadata: Extra JSON-serializable details
            context: Request origin
        """
        await self.db.execute(
            insert(audit_logs).values(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                metadata=metadata or {},
                ip_address=context.ip_address,
                user_agent=context.user_agent[:500],
            )
        )
        logger.info(
            "audit_logged",
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id or "system",
        )
