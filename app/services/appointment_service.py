"""Appointment service: booking workflow, cancellation and status changes."""

from datetime import UTC, date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.calendar import CalendarAttendee, CalendarEvent
from app.core.exceptions import (
    BadRequestException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
)
from app.core.integrations import Integrations
from app.core.redis_client import CacheManager
from app.core.video import DailyVideoClient, room_name_from_url
from app.models.appointments import appointments
from app.schemas.appointments import (
    ActionResponse,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentType,
    AvailableSlotsResponse,
    BookingResponse,
    ClinicianResponse,
)
from app.services.audit_service import AuditActions, AuditService, RequestContext
from app.services.conflict_service import ConflictService, as_utc
from app.services.notification_service import NotificationService
from app.services.user_service import UserService

logger = structlog.get_logger(__name__)

SLOT_TAKEN_MESSAGE = (
    "The clinician is already booked at this time. Please choose another time slot."
)

TERMINAL_STATUSES = {
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
}

# Clinician-driven transitions; cancellation and payment promotion have their own paths
ALLOWED_TRANSITIONS: dict[AppointmentStatus, set[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {AppointmentStatus.COMPLETED},
}

STATUS_AUDIT_ACTIONS = {
    AppointmentStatus.COMPLETED: AuditActions.APPOINTMENT_COMPLETED,
    AppointmentStatus.NO_SHOW: AuditActions.APPOINTMENT_NO_SHOW,
}

APPOINTMENT_TYPE_LABELS = {
    AppointmentType.INITIAL: "Initial consultation",
    AppointmentType.FOLLOW_UP: "Follow-up consultation",
    AppointmentType.EMERGENCY: "Urgent consultation",
}


def _now() -> datetime:
    return datetime.now(UTC)


def _to_response(row: RowMapping) -> AppointmentResponse:
    return AppointmentResponse.model_validate(dict(row))


class AppointmentService:
    """Service for booking and managing appointments."""

    def __init__(
        self,
        db: AsyncSession,
        integrations: Integrations | None = None,
        cache_manager: CacheManager | None = None,
    ):
        """
        Initialize service.

        Args:
            db: Database session
            integrations: External clients; None disables provisioning and email
            cache_manager: Optional cache for user lookups
        """
        self.db = db
        self.integrations = integrations
        self.users = UserService(cache_manager)
        self.conflicts = ConflictService(db)
        self.audit = AuditService(db)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        current_user: dict,
        data: AppointmentCreate,
        context: RequestContext,
    ) -> BookingResponse:
        """
        Book an appointment for the authenticated patient.

        Video room, calendar event and confirmation email are best-effort:
        their failure is logged and the booking still succeeds.

        Args:
            current_user: Authenticated user
            data: Booking request
            context: Request origin for the audit trail

        Returns:
            New appointment id and the video link, if one was provisioned

        Raises:
            ForbiddenException: If the caller is not a patient
            BadRequestException: If the clinician id is not a clinician
            ConflictException: If the clinician is already booked
        """
        if current_user.get("role") != "patient":
            raise ForbiddenException("Only patients can book appointments")

        clinician = await self.users.get_user_by_id(self.db, data.clinician_id)
        if not clinician or clinician.get("role") != "clinician" or not clinician.get("is_active"):
            raise BadRequestException("Invalid clinician ID")

        starts_at = as_utc(data.scheduled_at)
        ends_at = starts_at + timedelta(minutes=data.duration)
        log = logger.bind(
            patient_id=current_user["id"],
            clinician_id=data.clinician_id,
            scheduled_at=starts_at.isoformat(),
        )

        if await self.conflicts.has_conflict(data.clinician_id, starts_at, data.duration):
            log.info("booking_conflict")
            raise ConflictException(SLOT_TAKEN_MESSAGE)

        # No transaction stays open across the provider calls
        await self.db.rollback()

        event = self._calendar_event(
            current_user, clinician, starts_at, ends_at, data.appointment_type
        )
        video_room_url = await self._provision_video_room(data.clinician_id, starts_at, ends_at)
        if video_room_url:
            event.location = video_room_url
        calendar_event_id = await self._provision_calendar_event(event)

        status = (
            AppointmentStatus.PENDING_PAYMENT
            if data.require_payment
            else AppointmentStatus.SCHEDULED
        )

        try:
            # Serialize bookings per clinician between the re-check and the insert
            await self.users.get_user_for_update(self.db, data.clinician_id)
            if await self.conflicts.has_conflict(data.clinician_id, starts_at, data.duration):
                raise ConflictException(SLOT_TAKEN_MESSAGE)

            result = await self.db.execute(
                insert(appointments)
                .values(
                    patient_id=current_user["id"],
                    clinician_id=data.clinician_id,
                    scheduled_at=starts_at,
                    duration=data.duration,
                    ends_at=ends_at,
                    appointment_type=data.appointment_type.value,
                    status=status.value,
                    payment_status="unpaid",
                    video_room_url=video_room_url,
                    google_calendar_event_id=calendar_event_id,
                    notes=data.notes,
                )
                .returning(appointments.c.id)
            )
            appointment_id = result.scalar_one()

            await self.audit.log(
                AuditActions.APPOINTMENT_CREATED,
                "appointment",
                appointment_id,
                user_id=current_user["id"],
                metadata={
                    "clinician_id": data.clinician_id,
                    "scheduled_at": starts_at.isoformat(),
                    "duration": data.duration,
                    "status": status.value,
                },
                context=context,
            )
            await self.db.commit()
        except (ConflictException, IntegrityError):
            # Lost the race to a concurrent booking (or the exclusion constraint fired)
            await self.db.rollback()
            log.info("booking_conflict_on_insert")
            await self._release_resources(video_room_url, calendar_event_id)
            raise ConflictException(SLOT_TAKEN_MESSAGE)

        log.info(
            "appointment_booked",
            appointment_id=appointment_id,
            status=status.value,
            has_video=video_room_url is not None,
            has_calendar_event=calendar_event_id is not None,
        )

        if current_user.get("email"):
            await self._send_confirmation(current_user, clinician, appointment_id, event)

        return BookingResponse(appointment_id=appointment_id, video_room_url=video_room_url)

    def _calendar_event(
        self,
        patient: dict,
        clinician: dict,
        starts_at: datetime,
        ends_at: datetime,
        appointment_type: AppointmentType,
    ) -> CalendarEvent:
        patient_name = patient.get("full_name") or "Patient"
        clinician_name = clinician.get("full_name") or "Clinician"
        attendees = [
            CalendarAttendee(email=person["email"], name=person.get("full_name"))
            for person in (patient, clinician)
            if person.get("email")
        ]
        return CalendarEvent(
            summary=(
                f"{APPOINTMENT_TYPE_LABELS[appointment_type]}: {patient_name} with {clinician_name}"
            ),
            description=f"{settings.clinic_name} telehealth appointment.",
            start=starts_at,
            end=ends_at,
            timezone=settings.clinic_timezone,
            attendees=attendees,
        )

    async def _provision_video_room(
        self,
        clinician_id: int,
        starts_at: datetime,
        ends_at: datetime,
    ) -> str | None:
        if self.integrations is None:
            return None
        try:
            room = await self.integrations.video.create_room(
                DailyVideoClient.make_room_name(clinician_id, starts_at),
                not_before=starts_at - timedelta(minutes=settings.video_join_early_minutes),
                expires_at=ends_at + timedelta(minutes=settings.video_expiry_grace_minutes),
            )
        except Exception as e:
            logger.warning("video_room_provisioning_failed", error=str(e))
            return None
        return room.url

    async def _provision_calendar_event(self, event: CalendarEvent) -> str | None:
        if self.integrations is None:
            return None
        try:
            return await self.integrations.calendar.create_event(event)
        except Exception as e:
            logger.warning("calendar_event_provisioning_failed", error=str(e))
            return None

    async def _release_resources(
        self,
        video_room_url: str | None,
        calendar_event_id: str | None,
    ) -> None:
        if self.integrations is None:
            return
        if calendar_event_id:
            try:
                await self.integrations.calendar.delete_event(calendar_event_id)
            except Exception as e:
                logger.warning(
                    "calendar_event_release_failed", event_id=calendar_event_id, error=str(e)
                )
        if video_room_url:
            try:
                await self.integrations.video.delete_room(room_name_from_url(video_room_url))
            except Exception as e:
                logger.warning("video_room_release_failed", url=video_room_url, error=str(e))

    async def _send_confirmation(
        self,
        patient: dict,
        clinician: dict,
        appointment_id: int,
        event: CalendarEvent,
    ) -> None:
        if self.integrations is None:
            return
        try:
            await NotificationService(self.integrations.email).send_booking_confirmation(
                to_email=patient["email"],
                patient_name=patient.get("full_name"),
                clinician_name=clinician.get("full_name"),
                appointment_id=appointment_id,
                event=event,
                video_room_url=event.location,
            )
        except Exception as e:
            # Log error but don't fail the request
            logger.warning(
                "failed_to_send_booking_confirmation",
                appointment_id=appointment_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, appointment_id: int, for_update: bool = False) -> RowMapping:
        stmt = select(appointments).where(
            and_(
                appointments.c.id == appointment_id,
                appointments.c.deleted_at.is_(None),
            )
        )
        if for_update:
            stmt = stmt.with_for_update()

        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if not row:
            raise NotFoundException("Appointment not found")
        return row

    @staticmethod
    def _ensure_party(row: RowMapping, user: dict) -> None:
        """Only the owning patient or the assigned clinician may act on an appointment."""
        role = user.get("role")
        if role == "patient" and row["patient_id"] == user["id"]:
            return
        if role == "clinician" and row["clinician_id"] == user["id"]:
            return
        raise ForbiddenException("You don't have access to this appointment")

    async def get_appointment(self, appointment_id: int, user: dict) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user is neither a party nor an admin
        """
        row = await self._load(appointment_id)
        if user.get("role") != "admin":
            self._ensure_party(row, user)
        return _to_response(row)

    def _owner_condition(self, user: dict) -> Any:
        role = user.get("role")
        if role == "patient":
            return appointments.c.patient_id == user["id"]
        if role == "clinician":
            return appointments.c.clinician_id == user["id"]
        raise ForbiddenException("Invalid user role for appointments")

    async def list_appointments(
        self,
        user: dict,
        status_filter: AppointmentStatus | None = None,
    ) -> list[AppointmentResponse]:
        """List the caller's appointments, newest first."""
        conditions = [self._owner_condition(user), appointments.c.deleted_at.is_(None)]
        if status_filter:
            conditions.append(appointments.c.status == status_filter.value)

        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_at.desc())
        )
        result = await self.db.execute(stmt)
        return [_to_response(row) for row in result.mappings().all()]

    async def list_upcoming(self, user: dict) -> list[AppointmentResponse]:
        """List the caller's future scheduled appointments, soonest first."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    self._owner_condition(user),
                    appointments.c.deleted_at.is_(None),
                    appointments.c.status == AppointmentStatus.SCHEDULED.value,
                    appointments.c.scheduled_at >= _now(),
                )
            )
            .order_by(appointments.c.scheduled_at.asc())
        )
        result = await self.db.execute(stmt)
        return [_to_response(row) for row in result.mappings().all()]

    async def list_clinicians(self) -> list[ClinicianResponse]:
        """Clinicians patients can book with."""
        clinicians = await self.users.list_clinicians(self.db)
        return [ClinicianResponse.model_validate(c) for c in clinicians]

    async def get_availability(
        self,
        clinician_id: int,
        day: date,
        slot_duration: int = 30,
    ) -> AvailableSlotsResponse:
        """Free slots for a clinician on a clinic-local calendar day."""
        clinician = await self.users.get_user_by_id(self.db, clinician_id)
        if not clinician or clinician.get("role") != "clinician":
            raise BadRequestException("Invalid clinician ID")

        slots = await self.conflicts.get_available_slots(
            clinician_id, day, slot_duration_minutes=slot_duration
        )
        return AvailableSlotsResponse(
            clinician_id=clinician_id,
            day=day,
            slot_duration=slot_duration,
            timezone=settings.clinic_timezone,
            slots=slots,
        )

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    async def cancel_appointment(
        self,
        appointment_id: int,
        user: dict,
        context: RequestContext,
    ) -> ActionResponse:
        """
        Cancel an appointment.

        Cancelling an already-cancelled appointment succeeds without any
        further side effect.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user is neither the patient nor the clinician
            ConflictException: If the appointment already completed or was a no-show
        """
        row = await self._load(appointment_id, for_update=True)
        self._ensure_party(row, user)

        current = AppointmentStatus(row["status"])
        if current == AppointmentStatus.CANCELLED:
            await self.db.rollback()
            logger.info("appointment_already_cancelled", appointment_id=appointment_id)
            return ActionResponse()
        if current in TERMINAL_STATUSES:
            await self.db.rollback()
            raise ConflictException(f"Cannot cancel an appointment that is {current.value}")

        now = _now()
        result = await self.db.execute(
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status != AppointmentStatus.CANCELLED.value,
                )
            )
            .values(status=AppointmentStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        )
        if result.rowcount == 0:
            # A concurrent request cancelled it first
            await self.db.rollback()
            return ActionResponse()

        await self.audit.log(
            AuditActions.APPOINTMENT_CANCELLED,
            "appointment",
            appointment_id,
            user_id=user["id"],
            metadata={"previous_status": current.value, "cancelled_by": user.get("role")},
            context=context,
        )
        await self.db.commit()
        logger.info("appointment_cancelled", appointment_id=appointment_id, by=user["id"])

        await self._release_resources(row["video_room_url"], row["google_calendar_event_id"])
        await self._send_cancellation(row)

        return ActionResponse()

    async def _send_cancellation(self, row: RowMapping) -> None:
        if self.integrations is None:
            return
        patient = await self.users.get_user_by_id(self.db, row["patient_id"])
        if not patient or not patient.get("email"):
            return
        try:
            await NotificationService(self.integrations.email).send_cancellation_notice(
                to_email=patient["email"],
                patient_name=patient.get("full_name"),
                appointment_id=row["id"],
                starts_at=as_utc(row["scheduled_at"]),
                ends_at=as_utc(row["ends_at"]),
            )
        except Exception as e:
            logger.warning(
                "failed_to_send_cancellation_notice", appointment_id=row["id"], error=str(e)
            )

    async def update_status(
        self,
        appointment_id: int,
        user: dict,
        new_status: AppointmentStatus,
        context: RequestContext,
    ) -> AppointmentResponse:
        """
        Move an appointment through its lifecycle.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user is not a party, or a patient tries anything but cancel
            ConflictException: If the transition is not allowed
        """
        if new_status == AppointmentStatus.CANCELLED:
            await self.cancel_appointment(appointment_id, user, context)
            return _to_response(await self._load(appointment_id))

        row = await self._load(appointment_id, for_update=True)
        self._ensure_party(row, user)
        current = AppointmentStatus(row["status"])

        if current == new_status:
            await self.db.rollback()
            return _to_response(row)
        if user.get("role") == "patient":
            await self.db.rollback()
            raise ForbiddenException("Patients can only cancel appointments")
        if current in TERMINAL_STATUSES:
            await self.db.rollback()
            raise ConflictException(f"Cannot change an appointment that is {current.value}")
        if current == AppointmentStatus.PENDING_PAYMENT:
            await self.db.rollback()
            raise ConflictException("Appointment is awaiting payment")
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            await self.db.rollback()
            raise ConflictException(
                f"Cannot change status from {current.value} to {new_status.value}"
            )
        if new_status in STATUS_AUDIT_ACTIONS and _now() < as_utc(row["scheduled_at"]):
            await self.db.rollback()
            raise ConflictException(
                f"Cannot mark an appointment {new_status.value} before it starts"
            )

        result = await self.db.execute(
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(status=new_status.value, updated_at=_now())
            .returning(appointments)
        )
        updated = result.mappings().one()

        await self.audit.log(
            STATUS_AUDIT_ACTIONS.get(new_status, AuditActions.APPOINTMENT_UPDATED),
            "appointment",
            appointment_id,
            user_id=user["id"],
            metadata={"previous_status": current.value, "status": new_status.value},
            context=context,
        )
        await self.db.commit()
        logger.info(
            "appointment_status_updated",
            appointment_id=appointment_id,
            old_status=current.value,
            new_status=new_status.value,
        )
        return _to_response(updated)

    async def reschedule_appointment(
        self,
        appointment_id: int,
        user: dict,
        data: AppointmentReschedule,
        context: RequestContext,
    ) -> AppointmentResponse:
        """
        Move an active appointment to a new time.

        The conflict check ignores the appointment being moved, so shifting
        within its own window is allowed.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user is neither the patient nor the clinician
            ConflictException: If the appointment is not reschedulable or the new slot is taken
        """
        row = await self._load(appointment_id, for_update=True)
        self._ensure_party(row, user)

        current = AppointmentStatus(row["status"])
        if current not in (AppointmentStatus.PENDING_PAYMENT, AppointmentStatus.SCHEDULED):
            await self.db.rollback()
            raise ConflictException(f"Cannot reschedule an appointment that is {current.value}")

        starts_at = as_utc(data.scheduled_at)
        duration = data.duration or row["duration"]
        ends_at = starts_at + timedelta(minutes=duration)

        try:
            await self.users.get_user_for_update(self.db, row["clinician_id"])
            if await self.conflicts.has_conflict(
                row["clinician_id"], starts_at, duration, exclude_appointment_id=appointment_id
            ):
                raise ConflictException(SLOT_TAKEN_MESSAGE)

            result = await self.db.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(
                    scheduled_at=starts_at,
                    duration=duration,
                    ends_at=ends_at,
                    updated_at=_now(),
                )
                .returning(appointments)
            )
            updated = result.mappings().one()

            await self.audit.log(
                AuditActions.APPOINTMENT_UPDATED,
                "appointment",
                appointment_id,
                user_id=user["id"],
                metadata={
                    "previous_scheduled_at": as_utc(row["scheduled_at"]).isoformat(),
                    "previous_duration": row["duration"],
                    "scheduled_at": starts_at.isoformat(),
                    "duration": duration,
                },
                context=context,
            )
            await self.db.commit()
        except (ConflictException, IntegrityError):
            await self.db.rollback()
            raise ConflictException(SLOT_TAKEN_MESSAGE)

        logger.info(
            "appointment_rescheduled",
            appointment_id=appointment_id,
            scheduled_at=starts_at.isoformat(),
        )
        await self._sync_resources_after_reschedule(updated, starts_at, ends_at)
        return _to_response(updated)

    async def _sync_resources_after_reschedule(
        self,
        row: RowMapping,
        starts_at: datetime,
        ends_at: datetime,
    ) -> None:
        if self.integrations is None:
            return
        if row["video_room_url"]:
            try:
                await self.integrations.video.update_room_window(
                    room_name_from_url(row["video_room_url"]),
                    not_before=starts_at - timedelta(minutes=settings.video_join_early_minutes),
                    expires_at=ends_at + timedelta(minutes=settings.video_expiry_grace_minutes),
                )
            except Exception as e:
                logger.warning("video_room_update_failed", appointment_id=row["id"], error=str(e))
        if row["google_calendar_event_id"]:
            patient = await self.users.get_user_by_id(self.db, row["patient_id"]) or {}
            clinician = await self.users.get_user_by_id(self.db, row["clinician_id"]) or {}
            event = self._calendar_event(
                patient,
                clinician,
                starts_at,
                ends_at,
                AppointmentType(row["appointment_type"]),
            )
            event.location = row["video_room_url"]
            try:
                await self.integrations.calendar.update_event(
                    row["google_calendar_event_id"], event
                )
            except Exception as e:
                logger.warning(
                    "calendar_event_update_failed", appointment_id=row["id"], error=str(e)
                )
