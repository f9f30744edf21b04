"""Payment router - FastAPI endpoints for checkout, callbacks, cash receipts and refunds"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ...auth import get_current_user, require_roles
from ...config import FRONTEND_URL, PAYMENT_CALLBACK_RATE_LIMIT
from ...database import get_db
from ...errors import DomainError
from ...models import User
from ...rate_limiter import create_rate_limiter
from ...services.notification_service import NotificationDispatcher
from ...shared.constants import PaymentMethod, Role
from .razorpay_client import RazorpayClient
from .refund_service import RefundService
from .schemas import (
    CashPaymentRequest,
    PaymentInitiateRequest,
    PaymentRefundResponse,
    PaymentResponse,
    PayUCheckoutResponse,
    RazorpayCallback,
    RazorpayOrderResponse,
    ReconciliationResponse,
    RefundRequest,
    RefundResponse,
)
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

callback_rate_limit = create_rate_limiter(
    limit=PAYMENT_CALLBACK_RATE_LIMIT, window_seconds=60, key_prefix="payment_callback"
)


def get_dispatcher(request: Request) -> Optional[NotificationDispatcher]:
    return getattr(request.app.state, "dispatcher", None)


def get_razorpay_client(request: Request) -> Optional[RazorpayClient]:
    return getattr(request.app.state, "razorpay_client", None)


def get_payment_service(
    db: Session = Depends(get_db),
    razorpay_client: Optional[RazorpayClient] = Depends(get_razorpay_client),
    dispatcher: Optional[NotificationDispatcher] = Depends(get_dispatcher),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, razorpay_client=razorpay_client, dispatcher=dispatcher)


def get_refund_service(
    db: Session = Depends(get_db),
    razorpay_client: Optional[RazorpayClient] = Depends(get_razorpay_client),
) -> RefundService:
    """Dependency injection for RefundService"""
    return RefundService(db, razorpay_client=razorpay_client)


# ============================================================================
# RAZORPAY
# ============================================================================


@router.post("/razorpay/orders", response_model=RazorpayOrderResponse, status_code=201)
async def create_razorpay_order(
    body: PaymentInitiateRequest,
    patient: User = Depends(require_roles(Role.PATIENT)),
    service: PaymentService = Depends(get_payment_service),
):
    """Create a Razorpay order for the appointment's frozen final amount"""
    return await service.initiate_razorpay(body.appointment_id, patient)


@router.post("/razorpay/verify", response_model=ReconciliationResponse)
async def verify_razorpay_payment(
    body: RazorpayCallback,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
    _: None = Depends(callback_rate_limit),
):
    """Verify the checkout signature and settle the caller's own payment"""
    return await service.reconcile_razorpay(body, user)


# ============================================================================
# PAYU
# ============================================================================


@router.post("/payu/initiate", response_model=PayUCheckoutResponse, status_code=201)
async def initiate_payu_payment(
    body: PaymentInitiateRequest,
    patient: User = Depends(require_roles(Role.PATIENT)),
    service: PaymentService = Depends(get_payment_service),
):
    """Signed PayU form fields for the client to post to the action URL"""
    return service.initiate_payu(body.appointment_id, patient)


@router.post("/payu/callback")
async def payu_callback(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    _: None = Depends(callback_rate_limit),
):
    """
    PayU posts the browser back here (surl and furl). The outcome is applied
    and the browser is redirected to the frontend result page.
    """
    form = await request.form()
    payload = {key: str(value) for key, value in form.items()}

    try:
        outcome = await service.reconcile_payment(PaymentMethod.PAYU, payload)
    except DomainError as e:
        logger.warning(f"⚠️ PayU callback for txn {payload.get('txnid')} rejected: {e.message}")
        return RedirectResponse(
            url=f"{FRONTEND_URL}/payment/failure?txnid={payload.get('txnid', '')}", status_code=303
        )

    page = "success" if outcome["payment_status"] == "completed" else "failure"
    return RedirectResponse(
        url=f"{FRONTEND_URL}/payment/{page}?appointment_id={outcome['appointment_id']}",
        status_code=303,
    )


# ============================================================================
# CASH VIA AGENT
# ============================================================================


@router.post("/cash", response_model=ReconciliationResponse, status_code=201)
async def record_cash_payment(
    body: CashPaymentRequest,
    collector: User = Depends(require_roles(Role.AGENT, Role.ADMIN)),
    service: PaymentService = Depends(get_payment_service),
):
    """Record cash collected by an agent against an appointment"""
    return await service.record_cash_payment(body, collector)


# ============================================================================
# HISTORY / REFUNDS
# ============================================================================


@router.get("/history", response_model=list[PaymentResponse])
async def get_payment_history(
    limit: int = 100,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment_history(user, limit=min(max(limit, 1), 500))


@router.post("/{payment_id}/refunds", response_model=RefundResponse, status_code=201)
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    user: User = Depends(require_roles(Role.ADMIN, Role.DOCTOR)),
    service: RefundService = Depends(get_refund_service),
):
    """Refund part or all of what is left on a completed payment"""
    return await service.refund_payment(payment_id, body.amount, body.reason, user)


@router.get("/refunds/pending", response_model=list[PaymentRefundResponse])
async def list_pending_refunds(
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: RefundService = Depends(get_refund_service),
):
    """Refunds waiting for an operator to move the money"""
    return service.list_pending_manual_refunds()


@router.post("/refunds/{refund_id}/processed", response_model=PaymentRefundResponse)
async def mark_refund_processed(
    refund_id: int,
    gateway_refund_id: Optional[str] = None,
    admin: User = Depends(require_roles(Role.ADMIN)),
    service: RefundService = Depends(get_refund_service),
):
    return service.mark_manual_refund_processed(refund_id, admin, gateway_refund_id)
