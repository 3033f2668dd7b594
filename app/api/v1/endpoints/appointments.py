"""Appointment endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from app.dependencies import (
    CacheManagerDep,
    CurrentUser,
    DatabaseSession,
    IntegrationsDep,
    RequestContextDep,
)
from app.schemas.appointments import (
    ActionResponse,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    AvailableSlotsResponse,
    BookingResponse,
    ClinicianResponse,
)
from app.services.appointment_service import AppointmentService

router = APIRouter()


@router.post(
    "/",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    cache_manager: CacheManagerDep,
    context: RequestContextDep,
) -> BookingResponse:
    """
    Book an appointment with a clinician for the authenticated patient.

    Args:
        data: Booking request
        current_user: Authenticated patient
        db: Database session
        integrations: Video, calendar and email clients
        cache_manager: Cache for user lookups
        context: Request origin for the audit trail

    Returns:
        New appointment id and video link (null if the room could not be created)
    """
    service = AppointmentService(db, integrations, cache_manager)
    return await service.create_appointment(current_user, data, context)


@router.get(
    "/",
    response_model=list[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    current_user: CurrentUser,
    db: DatabaseSession,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
) -> list[AppointmentResponse]:
    """
    List appointments for the authenticated patient or clinician.

    Args:
        current_user: Authenticated user
        db: Database session
        status_filter: Filter by status

    Returns:
        Appointments, newest first
    """
    service = AppointmentService(db)
    return await service.list_appointments(current_user, status_filter)


@router.get(
    "/upcoming",
    response_model=list[AppointmentResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List upcoming appointments",
)
async def list_upcoming_appointments(
    current_user: CurrentUser,
    db: DatabaseSession,
) -> list[AppointmentResponse]:
    """List future scheduled appointments, soonest first."""
    service = AppointmentService(db)
    return await service.list_upcoming(current_user)


@router.get(
    "/clinicians",
    response_model=list[ClinicianResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List bookable clinicians",
)
async def list_clinicians(
    current_user: CurrentUser,
    db: DatabaseSession,
    cache_manager: CacheManagerDep,
) -> list[ClinicianResponse]:
    """List active clinicians."""
    service = AppointmentService(db, cache_manager=cache_manager)
    return await service.list_clinicians()


@router.get(
    "/availability",
    response_model=AvailableSlotsResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get available slots",
)
async def get_availability(
    current_user: CurrentUser,
    db: DatabaseSession,
    cache_manager: CacheManagerDep,
    clinician_id: int = Query(..., gt=0),
    day: date = Query(..., alias="date"),
    slot_minutes: int = Query(30, ge=5, le=240),
) -> AvailableSlotsResponse:
    """
    Free slots for a clinician during clinic working hours.

    Args:
        current_user: Authenticated user
        db: Database session
        cache_manager: Cache for user lookups
        clinician_id: Clinician to check
        day: Clinic-local calendar day
        slot_minutes: Slot length in minutes

    Returns:
        Free slot start instants in UTC
    """
    service = AppointmentService(db, cache_manager=cache_manager)
    return await service.get_availability(clinician_id, day, slot_minutes)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: int,
    current_user: CurrentUser,
    db: DatabaseSession,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Args:
        appointment_id: Appointment ID
        current_user: Authenticated user
        db: Database session

    Returns:
        Appointment details
    """
    service = AppointmentService(db)
    return await service.get_appointment(appointment_id, current_user)


@router.patch(
    "/{appointment_id}/status",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Update appointment status",
)
async def update_appointment_status(
    appointment_id: int,
    data: AppointmentStatusUpdate,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    cache_manager: CacheManagerDep,
    context: RequestContextDep,
) -> AppointmentResponse:
    """
    Update the status of an appointment.

    Args:
        appointment_id: Appointment ID
        data: New status
        current_user: Authenticated user
        db: Database session
        integrations: Clients used when the update cancels the appointment
        cache_manager: Cache for user lookups
        context: Request origin for the audit trail

    Returns:
        Updated appointment
    """
    service = AppointmentService(db, integrations, cache_manager)
    return await service.update_status(appointment_id, current_user, data.status, context)


@router.patch(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: int,
    data: AppointmentReschedule,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    cache_manager: CacheManagerDep,
    context: RequestContextDep,
) -> AppointmentResponse:
    """
    Move an appointment to a new time.

    Args:
        appointment_id: Appointment ID
        data: New start and optional new duration
        current_user: Authenticated user
        db: Database session
        integrations: Video and calendar clients
        cache_manager: Cache for user lookups
        context: Request origin for the audit trail

    Returns:
        Updated appointment
    """
    service = AppointmentService(db, integrations, cache_manager)
    return await service.reschedule_appointment(appointment_id, current_user, data, context)


@router.post(
    "/{appointment_id}/cancel",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: int,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    cache_manager: CacheManagerDep,
    context: RequestContextDep,
) -> ActionResponse:
    """
    Cancel an appointment. Repeating the call is a no-op.

    Args:
        appointment_id: Appointment ID
        current_user: Authenticated user
        db: Database session
        integrations: Video, calendar and email clients
        cache_manager: Cache for user lookups
        context: Request origin for the audit trail

    Returns:
        Success acknowledgement
    """
    service = AppointmentService(db, integrations, cache_manager)
    return await service.cancel_appointment(appointment_id, current_user, context)
