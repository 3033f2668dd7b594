"""Double-booking detection and slot enumeration."""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import ValidationException
from app.models.appointments import ACTIVE_RESERVING_STATUSES, appointments


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC instant; naive values are already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def intervals_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """Half-open overlap: [a_start, a_end) and [b_start, b_end) share an instant."""
    return a_start < b_end and b_start < a_end


class ConflictService:
    """Answers whether a clinician is free for a proposed interval."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    @staticmethod
    def _active_for(clinician_id: int) -> list:
        return [
            appointments.c.clinician_id == clinician_id,
            appointments.c.status.in_(ACTIVE_RESERVING_STATUSES),
            appointments.c.deleted_at.is_(None),
        ]

    async def has_conflict(
        self,
        clinician_id: int,
        scheduled_at: datetime,
        duration_minutes: int,
        exclude_appointment_id: int | None = None,
    ) -> bool:
        """
        Check whether an active appointment overlaps the proposed interval.

        Touching endpoints (an existing appointment ending exactly at
        ``scheduled_at``) do not conflict. Past instants are accepted.

        Args:
            clinician_id: Clinician being booked
            scheduled_at: Proposed start
            duration_minutes: Proposed length, must be positive
            exclude_appointment_id: Appointment to ignore (when moving it)

        Returns:
            True if the slot is taken, False if it is free

        Raises:
            ValidationException: If duration is not positive
        """
        if duration_minutes <= 0:
            raise ValidationException("Duration must be greater than zero")

        start = as_utc(scheduled_at)
        proposed_end = start + timedelta(minutes=duration_minutes)

        conditions = self._active_for(clinician_id) + [
            appointments.c.scheduled_at < proposed_end,
            appointments.c.ends_at > start,
        ]
        if exclude_appointment_id is not None:
            conditions.append(appointments.c.id != exclude_appointment_id)

        stmt = select(appointments.c.id).where(and_(*conditions)).limit(1)
        result = await self.db.execute(stmt)
        return result.first() is not None

    async def get_available_slots(
        self,
        clinician_id: int,
        day: date,
        slot_duration_minutes: int = 30,
        working_hours: tuple[int, int] = (9, 17),
        tz: str | None = None,
    ) -> list[datetime]:
        """
        List free slot starts for a clinician on one day.

        Slots are aligned to the start of the working window in the clinic's
        local timezone. The day's bookings are loaded once and each slot is
        tested in memory, giving the same verdict as ``has_conflict``.

        Returns:
            Free slot starts in ascending order, as UTC instants
        """
        if slot_duration_minutes <= 0:
            raise ValidationException("Slot duration must be greater than zero")
        start_hour, end_hour = working_hours
        if not 0 <= start_hour < end_hour <= 24:
            raise ValidationException("Working hours must satisfy 0 <= start < end <= 24")

        zone = ZoneInfo(tz or settings.clinic_timezone)
        local_midnight = datetime.combine(day, time.min, tzinfo=zone)
        window_start = as_utc(local_midnight + timedelta(hours=start_hour))
        window_end = as_utc(local_midnight + timedelta(hours=end_hour))
        slot = timedelta(minutes=slot_duration_minutes)

        # A slot starting just before window_end may run past it
        stmt = select(appointments.c.scheduled_at, appointments.c.ends_at).where(
            and_(
                *self._active_for(clinician_id),
                appointments.c.scheduled_at < window_end + slot,
                appointments.c.ends_at > window_start,
            )
        )
        result = await self.db.execute(stmt)
        booked = [(as_utc(row.scheduled_at), as_utc(row.ends_at)) for row in result]

        available: list[datetime] = []
        current = window_start
        while current < window_end:
            slot_end = current + slot
            if not any(intervals_overlap(current, slot_end, s, e) for s, e in booked):
                available.append(current)
            current = slot_end

        return available
