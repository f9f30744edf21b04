from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from telecare import models
from telecare.database import Base, create_session_factory
from telecare.domain.appointments.schemas import BookingRequest
from telecare.domain.appointments.service import AppointmentService
from telecare.domain.payments.gateways import CashAdapter, PayUAdapter, RazorpayAdapter
from telecare.domain.payments.refund_service import RefundService
from telecare.domain.payments.service import PaymentService
from telecare.shared.constants import Role
from telecare.shared.timeutils import utcnow

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_SECRET = "rzp_test_secret"
PAYU_KEY = "payu_key"
PAYU_SALT = "payu_salt"


class FakeDispatcher:
    """Records notifications instead of queueing them"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, category, recipient, payload, defer_until=None):
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.sent.append(
            {"category": category, "recipient": recipient, "payload": payload, "defer_until": defer_until}
        )
        return {"success": True, "messageId": f"job_{len(self.sent)}"}

    def categories(self):
        return [n["category"] for n in self.sent]


class FakeRazorpayClient:
    def __init__(self):
        self.key_id = RAZORPAY_KEY_ID
        self.orders = []
        self.refunds = []

    def is_available(self):
        return True

    async def create_order(self, amount_subunits, currency, receipt, notes=None):
        order = {"id": f"order_{len(self.orders) + 1}", "amount": amount_subunits, "currency": currency,
                 "receipt": receipt, "notes": notes or {}}
        self.orders.append(order)
        return order

    async def refund(self, payment_id, amount_subunits, notes=None):
        refund = {"id": f"rfnd_{len(self.refunds) + 1}", "payment_id": payment_id, "amount": amount_subunits}
        self.refunds.append(refund)
        return refund


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = create_session_factory(engine)()
    yield session
    session.close()


def _user(db, **fields):
    user = models.User(**fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db):
    return _user(db, email="asha@example.com", full_name="Asha Patel", phone="9000000001", role=Role.PATIENT)


@pytest.fixture
def other_patient(db):
    return _user(db, email="ravi@example.com", full_name="Ravi Kumar", phone="9000000002", role=Role.PATIENT)


@pytest.fixture
def doctor(db):
    return _user(
        db,
        email="dr.mehta@example.com",
        full_name="Dr. Mehta",
        role=Role.DOCTOR,
        is_approved=True,
        consultation_fee=Decimal("1000.00"),
        specialization="General Medicine",
    )


@pytest.fixture
def other_doctor(db):
    return _user(
        db,
        email="dr.rao@example.com",
        full_name="Dr. Rao",
        role=Role.DOCTOR,
        is_approved=True,
        consultation_fee=Decimal("500.00"),
    )


@pytest.fixture
def agent(db):
    return _user(
        db,
        email="agent.one@example.com",
        full_name="Agent One",
        role=Role.AGENT,
        agent_code="AGT001",
        commission_rate=Decimal("10"),
    )


@pytest.fixture
def other_agent(db):
    return _user(
        db,
        email="agent.two@example.com",
        full_name="Agent Two",
        role=Role.AGENT,
        agent_code="AGT002",
    )


@pytest.fixture
def admin(db):
    return _user(db, email="admin@example.com", full_name="Admin", role=Role.ADMIN)


@pytest.fixture
def make_code(db, agent):
    """Insert a referral code row directly; defaults give an active 20% / 10% code"""

    def factory(code="SAVE20", **overrides):
        now = utcnow()
        fields = {
            "code": code,
            "agent_id": agent.id,
            "discount_type": "percentage",
            "discount_value": Decimal("20"),
            "commission_type": "percentage",
            "commission_value": Decimal("10"),
            "max_usage_per_user": 1,
            "start_date": now - timedelta(days=1),
            "expiration_date": now + timedelta(days=30),
            "target_roles": [],
        }
        fields.update(overrides)
        row = models.ReferralCode(**fields)
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return factory


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def razorpay_client():
    return FakeRazorpayClient()


@pytest.fixture
def appointment_service(db):
    return AppointmentService(db)


@pytest.fixture
def payment_service(db, razorpay_client, dispatcher):
    return PaymentService(
        db,
        razorpay_client=razorpay_client,
        dispatcher=dispatcher,
        razorpay=RazorpayAdapter(RAZORPAY_KEY_ID, RAZORPAY_SECRET),
        payu=PayUAdapter(PAYU_KEY, PAYU_SALT, action_url="https://test.payu.in/_payment"),
        cash=CashAdapter(Decimal("1")),
    )


@pytest.fixture
def refund_service(db, razorpay_client):
    return RefundService(db, razorpay_client=razorpay_client)


@pytest.fixture
def book(appointment_service, patient, doctor):
    """Book an appointment three days out; pass referral_code to price a code in"""

    def factory(referral_code=None, who=None, with_doctor=None, days=3, payment_method=None, when=None):
        request = BookingRequest(
            doctor_id=(with_doctor or doctor).id,
            appointment_date=when or (utcnow() + timedelta(days=days)).replace(microsecond=0),
            referral_code=referral_code,
            payment_method=payment_method,
        )
        return appointment_service.book_appointment(who or patient, request)

    return factory
