"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...shared.timeutils import to_naive_utc


class BookingRequest(BaseModel):
    """Schema for booking a consultation"""

    model_config = ConfigDict(extra="forbid")

    doctor_id: int
    appointment_date: datetime
    symptoms: Optional[str] = Field(default=None, max_length=2000)
    referral_code: Optional[str] = Field(default=None, max_length=50)
    payment_method: Optional[Literal["razorpay", "payu", "cash_via_agent"]] = None

    @field_validator("appointment_date")
    @classmethod
    def normalize_date(cls, v):
        return to_naive_utc(v)

    @field_validator("referral_code")
    @classmethod
    def blank_code_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    appointment_date: datetime

    @field_validator("appointment_date")
    @classmethod
    def normalize_date(cls, v):
        return to_naive_utc(v)


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = Field(default=None, max_length=500)


class RejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(default="Doctor unavailable", min_length=1, max_length=500)


class ConsultationNotes(BaseModel):
    """Notes, diagnosis and prescription recorded by the doctor"""

    model_config = ConfigDict(extra="forbid")

    notes: Optional[str] = Field(default=None, max_length=10000)
    diagnosis: Optional[str] = Field(default=None, max_length=5000)
    prescription: Optional[str] = Field(default=None, max_length=10000)


class PartySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    email: str
    phone: Optional[str] = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    doctor_id: int
    appointment_date: datetime
    status: str
    symptoms: Optional[str] = None
    consultation_fee: Decimal
    discount: Decimal
    final_amount: Decimal
    referral_code: Optional[str] = None
    agent_commission: Decimal
    payment_method: Optional[str] = None
    payment_status: str
    payment_id: Optional[int] = None
    notes: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AppointmentDetailResponse(BaseModel):
    appointment: AppointmentResponse
    patient: PartySummary
    doctor: PartySummary
