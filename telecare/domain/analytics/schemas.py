"""Analytics domain schemas - response models for the admin platform summary"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class AnalyticsPeriod(BaseModel):
    days: int
    start_date: datetime
    end_date: datetime


class UserStats(BaseModel):
    total: int
    by_role: dict[str, int]
    active_users: int
    inactive_users: int
    new_users_in_period: int
    doctors_pending_approval: int


class AppointmentStats(BaseModel):
    total: int
    by_status: dict[str, int]
    in_period: int
    completed_in_period: int
    completion_rate: Decimal
    cancellation_rate: Decimal


class PaymentStatusTotals(BaseModel):
    count: int
    amount: Decimal
    refunded_amount: Decimal


class MethodTotals(BaseModel):
    count: int
    amount: Decimal


class RevenueStats(BaseModel):
    gross_collected: Decimal
    total_refunded: Decimal
    net_revenue: Decimal
    collected_in_period: Decimal
    average_payment: Decimal
    by_status: dict[str, PaymentStatusTotals]
    by_method: dict[str, MethodTotals]


class TopAgent(BaseModel):
    agent_id: int
    agent_name: str
    agent_code: Optional[str] = None
    referrals: int
    commission: Decimal


class ReferralProgramStats(BaseModel):
    total_codes: int
    active_codes: int
    counted_usages: int
    reversed_usages: int
    total_commission: Decimal
    total_discount: Decimal
    top_agents: list[TopAgent]


class PlatformAnalyticsResponse(BaseModel):
    period: AnalyticsPeriod
    users: UserStats
    appointments: AppointmentStats
    revenue: RevenueStats
    referral_program: ReferralProgramStats
