"""Directory domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DoctorApprovalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_approved: bool


class AgentStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_active: bool


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    full_name: str
    phone: Optional[str] = None
    role: str
    is_active: bool
    is_approved: bool
    consultation_fee: Optional[Decimal] = None
    specialization: Optional[str] = None
    commission_rate: Optional[Decimal] = None
    agent_code: Optional[str] = None
    created_at: Optional[datetime] = None
