"""
Gateway adapters

Each adapter turns one gateway's callback shape into a GatewayResult:
- Razorpay: HMAC-SHA256 over "order_id|payment_id" with the key secret
- PayU: SHA-512 over pipe-joined fields plus the merchant salt; the request
  and response directions use different field orders
- Cash: no cryptography; the collecting agent must be active and the amount
  must match the appointment within the configured tolerance
"""

import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...config import BACKEND_URL, CASH_AMOUNT_TOLERANCE, PAYU_ACTION_URL
from ...errors import AmountMismatchError
from ...models import Appointment, Payment, User
from ...shared.constants import PaymentMethod
from ...shared.money import format_amount, to_money, to_subunits
from ...webhook_security import compute_hmac_sha256, compute_sha512, constant_time_compare
from .schemas import PayUCallback, RazorpayCallback

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"

PAYU_PRODUCT_INFO = "Medical Consultation"
PAYU_REQUEST_FIELDS = (
    "key",
    "txnid",
    "amount",
    "productinfo",
    "firstname",
    "email",
    "udf1",
    "udf2",
    "udf3",
    "udf4",
    "udf5",
)
PAYU_RESERVED_BLANKS = 5


class GatewayResult(BaseModel):
    """Normalized outcome of one gateway callback"""

    model_config = ConfigDict(frozen=True)

    gateway: str
    verified: bool
    raw_status: str
    gateway_order_id: str
    external_payment_id: Optional[str] = None
    amount_subunits: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.verified and self.raw_status == SUCCESS

    @property
    def failed(self) -> bool:
        return not self.verified or self.raw_status == FAILURE


class RazorpayAdapter:
    gateway = PaymentMethod.RAZORPAY

    def __init__(self, key_id: str, key_secret: str):
        self.key_id = key_id
        self.key_secret = key_secret

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        return compute_hmac_sha256(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))

    def verify(self, callback: RazorpayCallback, payment: Payment) -> GatewayResult:
        """Check the checkout signature; the amount comes from our stored payment"""
        if not self.key_secret:
            logger.error("❌ RAZORPAY_KEY_SECRET not configured - cannot verify signature")
            verified = False
        else:
            expected = self.expected_signature(callback.razorpay_order_id, callback.razorpay_payment_id)
            verified = constant_time_compare(expected, callback.razorpay_signature)

        return GatewayResult(
            gateway=self.gateway,
            verified=verified,
            raw_status=SUCCESS if verified else "signature_mismatch",
            gateway_order_id=callback.razorpay_order_id,
            external_payment_id=callback.razorpay_payment_id,
            amount_subunits=to_subunits(payment.amount),
            failure_reason=None if verified else "Invalid payment signature",
        )


class PayUAdapter:
    gateway = PaymentMethod.PAYU

    def __init__(self, merchant_key: str, merchant_salt: str, action_url: str = PAYU_ACTION_URL):
        self.merchant_key = merchant_key
        self.merchant_salt = merchant_salt
        self.action_url = action_url

    def request_hash(self, fields: dict) -> str:
        """sha512(key|txnid|amount|productinfo|firstname|email|udf1..udf5||||||salt)"""
        parts = [str(fields.get(name, "")) for name in PAYU_REQUEST_FIELDS]
        parts += [""] * PAYU_RESERVED_BLANKS
        parts.append(self.merchant_salt)
        return compute_sha512("|".join(parts))

    def response_hash(self, callback: PayUCallback) -> str:
        """sha512(salt|status||||||udf5..udf1|email|firstname|productinfo|amount|txnid|key)"""
        parts = [self.merchant_salt, callback.status]
        parts += [""] * PAYU_RESERVED_BLANKS
        parts += [callback.udf5, callback.udf4, callback.udf3, callback.udf2, callback.udf1]
        parts += [
            callback.email,
            callback.firstname,
            callback.productinfo,
            callback.amount,
            callback.txnid,
            self.merchant_key,
        ]
        return compute_sha512("|".join(parts))

    def build_checkout(
        self, txnid: str, appointment: Appointment, patient: User, amount: Decimal
    ) -> dict[str, str]:
        """Form fields the client posts to PayU, hash included"""
        fields = {
            "key": self.merchant_key,
            "txnid": txnid,
            "amount": format_amount(amount),
            "productinfo": PAYU_PRODUCT_INFO,
            "firstname": patient.full_name,
            "email": patient.email,
            "phone": patient.phone or "",
            "udf1": str(appointment.id),
            "udf2": str(appointment.patient_id),
            "udf3": str(appointment.doctor_id),
            "udf4": appointment.referral_code or "",
            "udf5": format_amount(appointment.agent_commission),
            "surl": f"{BACKEND_URL}/payments/payu/callback",
            "furl": f"{BACKEND_URL}/payments/payu/callback",
        }
        fields["hash"] = self.request_hash(fields)
        return fields

    def verify(self, callback: PayUCallback) -> GatewayResult:
        if not self.merchant_salt:
            logger.error("❌ PAYU_MERCHANT_SALT not configured - cannot verify hash")
            verified = False
        elif callback.key and callback.key != self.merchant_key:
            logger.warning(f"🚫 PayU callback for unexpected merchant key on txn {callback.txnid}")
            verified = False
        else:
            verified = constant_time_compare(self.response_hash(callback), callback.hash.lower())

        status = callback.status.strip().lower()
        if not verified:
            failure_reason = "Invalid response hash"
        elif status == FAILURE:
            failure_reason = callback.error_Message or "Payment failed at gateway"
        else:
            failure_reason = None

        return GatewayResult(
            gateway=self.gateway,
            verified=verified,
            raw_status=status,
            gateway_order_id=callback.txnid,
            external_payment_id=callback.mihpayid or callback.payuMoneyId,
            amount_subunits=to_subunits(callback.amount),
            failure_reason=failure_reason,
        )


class CashAdapter:
    gateway = PaymentMethod.CASH

    def __init__(self, tolerance: Decimal = CASH_AMOUNT_TOLERANCE):
        self.tolerance = to_money(tolerance)

    def verify(
        self, agent: Optional[User], amount: Decimal, appointment: Appointment, txnid: str
    ) -> GatewayResult:
        """Raises AmountMismatchError when the collected cash differs from the booked amount"""
        collected = to_money(amount)
        if abs(collected - appointment.final_amount) > self.tolerance:
            raise AmountMismatchError(
                f"Collected amount {collected} does not match appointment amount {appointment.final_amount}",
                expected=str(appointment.final_amount),
                received=str(collected),
            )

        verified = agent is not None
        return GatewayResult(
            gateway=self.gateway,
            verified=verified,
            raw_status=SUCCESS if verified else "agent_not_found",
            gateway_order_id=txnid,
            external_payment_id=txnid,
            amount_subunits=to_subunits(collected),
            failure_reason=None if verified else "Invalid or inactive agent code",
        )
