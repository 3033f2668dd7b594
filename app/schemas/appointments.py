"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from app.services.conflict_service import as_utc


class AppointmentStatus(str, Enum):
    """Appointment lifecycle status."""

    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class AppointmentType(str, Enum):
    """Consultation type."""

    INITIAL = "initial"
    FOLLOW_UP = "follow_up"
    EMERGENCY = "emergency"


class PaymentStatus(str, Enum):
    """Payment sub-state of an appointment."""

    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    clinician_id: int = Field(..., gt=0)
    scheduled_at: datetime
    duration: int = Field(default=30, gt=0, le=480, description="Duration in minutes")
    appointment_type: AppointmentType = AppointmentType.INITIAL
    notes: str | None = Field(None, max_length=1000)
    require_payment: bool = Field(
        default=False,
        description="Hold the slot in pending_payment until checkout completes",
    )

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime) -> datetime:
        """Store every start instant in UTC."""
        return as_utc(v)


class BookingResponse(BaseModel):
    """Result of a successful booking."""

    success: bool = True
    appointment_id: int
    video_room_url: str | None = None


class ActionResponse(BaseModel):
    """Acknowledgement for state-changing actions."""

    success: bool = True


class AppointmentStatusUpdate(BaseModel):
    """Schema for updating appointment status."""

    status: AppointmentStatus


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new time."""

    scheduled_at: datetime
    duration: int | None = Field(None, gt=0, le=480)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime) -> datetime:
        """Store every start instant in UTC."""
        return as_utc(v)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: int
    patient_id: int
    clinician_id: int
    scheduled_at: datetime
    duration: int
    ends_at: datetime
    appointment_type: AppointmentType
    status: AppointmentStatus
    payment_status: PaymentStatus
    stripe_payment_intent_id: str | None = None
    amount_paid: int | None = None
    video_room_url: str | None = None
    google_calendar_event_id: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("scheduled_at", "ends_at", "created_at", "updated_at", "cancelled_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        """Some drivers hand back naive UTC values."""
        return as_utc(v) if v is not None else None


class AvailableSlotsResponse(BaseModel):
    """Free start instants for a clinician on one day."""

    clinician_id: int
    day: date
    slot_duration: int
    timezone: str
    slots: list[datetime]


class ClinicianResponse(BaseModel):
    """Clinician directory entry."""

    id: int
    full_name: str | None = None
    email: str | None = None
    specialization: str | None = None
    ahpra_number: str | None = None

    model_config = {"from_attributes": True}
