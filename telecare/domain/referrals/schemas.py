"""Referral domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...shared.constants import Role
from ...shared.timeutils import to_naive_utc

DiscountKind = Literal["percentage", "fixed"]


def _check_roles(roles: Optional[list[str]]) -> Optional[list[str]]:
    if roles is None:
        return roles
    unknown = [r for r in roles if r not in Role.ALL]
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(unknown)}")
    return roles


class ReferralValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1, max_length=50)
    order_amount: Decimal = Field(ge=0)


class ReferralValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    discount: Decimal = Decimal("0.00")
    final_amount: Optional[Decimal] = None
    commission: Decimal = Decimal("0.00")


class ReferralCodeCreate(BaseModel):
    """Schema for assigning a new code to an agent"""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    agent_id: int
    description: Optional[str] = Field(default=None, max_length=500)
    discount_type: DiscountKind = "percentage"
    discount_value: Decimal = Field(ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    commission_type: DiscountKind = "percentage"
    commission_value: Optional[Decimal] = Field(default=None, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: int = Field(default=1, ge=1)
    start_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    target_roles: list[str] = Field(default_factory=list)

    @field_validator("start_date", "expiration_date")
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    @field_validator("target_roles")
    @classmethod
    def validate_roles(cls, v):
        return _check_roles(v)

    @model_validator(mode="after")
    def check_percentage_range(self):
        if self.discount_type == "percentage" and not (1 <= self.discount_value <= 100):
            raise ValueError("Percentage discount must be between 1 and 100")
        if self.start_date and self.expiration_date and self.expiration_date <= self.start_date:
            raise ValueError("Expiration date must be after start date")
        return self


class ReferralCodeUpdate(BaseModel):
    """Editable fields only - usage aggregates are never settable"""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, max_length=500)
    discount_type: Optional[DiscountKind] = None
    discount_value: Optional[Decimal] = Field(default=None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_order_amount: Optional[Decimal] = Field(default=None, ge=0)
    commission_type: Optional[DiscountKind] = None
    commission_value: Optional[Decimal] = Field(default=None, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    target_roles: Optional[list[str]] = None

    @field_validator("start_date", "expiration_date")
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    @field_validator("target_roles")
    @classmethod
    def validate_roles(cls, v):
        return _check_roles(v)


class ReferralCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    agent_id: int
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None
    min_order_amount: Decimal
    commission_type: str
    commission_value: Decimal
    usage_count: int
    max_usage: Optional[int] = None
    max_usage_per_user: int
    start_date: datetime
    expiration_date: datetime
    is_active: bool
    target_roles: list[str]
    total_referrals: int
    successful_referrals: int
    total_commission_earned: Decimal
    total_discount_given: Decimal
    last_used_at: Optional[datetime] = None
    status: str
    conversion_rate: Decimal
    avg_commission_per_referral: Decimal


class ReferralCodeDeleteResponse(BaseModel):
    deleted: bool
    deactivated: bool
    message: str


class AgentEarningsResponse(BaseModel):
    agent_id: int
    agent_name: str
    agent_code: Optional[str] = None
    total_codes: int
    active_codes: int
    total_usage: int
    total_commission_earned: Decimal
    total_discount_given: Decimal


class AgentCommissionResponse(BaseModel):
    id: int
    code: str
    appointment_id: int
    patient_id: int
    discount: Decimal
    commission: Decimal
    used_at: datetime
    reversed: bool
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
