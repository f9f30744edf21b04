"""Payment domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentInitiateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    appointment_id: int


class CheckoutPrefill(BaseModel):
    name: str
    email: str
    contact: Optional[str] = None


class RazorpayOrderResponse(BaseModel):
    payment_id: int
    key_id: str
    order_id: str
    amount: int  # paise
    currency: str
    name: str
    description: str
    prefill: CheckoutPrefill
    notes: dict[str, str]


class RazorpayCallback(BaseModel):
    """Fields returned by Razorpay checkout to the client after a successful payment"""

    model_config = ConfigDict(extra="forbid")

    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class PayUCheckoutResponse(BaseModel):
    payment_id: int
    action_url: str
    fields: dict[str, str]


class PayUCallback(BaseModel):
    """
    Form posted by PayU to the surl/furl. PayU adds bank- and mode-specific
    fields that are not part of the hash; they are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    txnid: str
    status: str
    hash: str
    amount: str
    productinfo: str = ""
    firstname: str = ""
    email: str = ""
    key: str = ""
    mihpayid: Optional[str] = None
    payuMoneyId: Optional[str] = None
    udf1: str = ""
    udf2: str = ""
    udf3: str = ""
    udf4: str = ""
    udf5: str = ""
    error_Message: Optional[str] = None


class CashPaymentRequest(BaseModel):
    """Cash collected in person by an agent"""

    model_config = ConfigDict(extra="forbid")

    appointment_id: int
    amount: Decimal = Field(gt=0)
    agent_code: str = Field(min_length=1, max_length=50)
    receipt_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ReconciliationResponse(BaseModel):
    appointment_id: int
    payment_id: int
    payment_status: str
    appointment_status: str
    referral_counted: bool = False


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    reason: str = Field(default="Refund requested", max_length=500)


class RefundResponse(BaseModel):
    payment_id: int
    refunded_amount: Decimal
    status: str
    refund_id: int
    refund_status: str
    appointment_status: str


class PaymentRefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int
    amount: Decimal
    reason: Optional[str] = None
    status: str
    gateway_refund_id: Optional[str] = None
    requested_by: Optional[int] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: int
    patient_id: int
    doctor_id: int
    payment_method: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    currency: str
    amount: Decimal
    discount: Decimal
    agent_commission: Decimal
    referral_code: Optional[str] = None
    refunded_amount: Decimal
    receipt_number: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    refunds: list[PaymentRefundResponse] = []
