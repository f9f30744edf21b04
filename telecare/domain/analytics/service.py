"""Analytics service - assembles the admin platform summary"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import ValidationFailedError
from ...shared.constants import AppointmentStatus, PaymentStatus, Role
from ...shared.money import ZERO, to_money
from ...shared.timeutils import utcnow
from .repository import COLLECTED_STATUSES, AnalyticsRepository

logger = logging.getLogger(__name__)

MAX_PERIOD_DAYS = 366


def percentage(part: int, whole: int) -> Decimal:
    if whole == 0:
        return ZERO
    return to_money(Decimal(part) / whole * 100)


class AnalyticsService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = AnalyticsRepository()

    def platform_summary(self, period_days: int = 30, top_agents: int = 5, now: Optional[datetime] = None) -> dict:
        """
        Platform-wide figures for the admin dashboard.

        Revenue is taken from payments, not appointments: gross is every
        amount received, net subtracts what has been refunded. Referral
        figures count only usages that have not been reversed.
        """
        if period_days < 1 or period_days > MAX_PERIOD_DAYS:
            raise ValidationFailedError(f"Period must be between 1 and {MAX_PERIOD_DAYS} days")

        end = now or utcnow()
        start = end - timedelta(days=period_days)

        users_by_role = {role: 0 for role in Role.ALL}
        users_by_role.update(self.repo.count_users_by_role(self.db))
        activity = self.repo.get_user_activity(self.db, start)

        appointments_by_status = {status: 0 for status in AppointmentStatus.ALL}
        appointments_by_status.update(self.repo.count_appointments_by_status(self.db))
        total_appointments = sum(appointments_by_status.values())
        period = self.repo.get_appointments_in_period(self.db, start)

        payments_by_status = {
            status: {"count": 0, "amount": ZERO, "refunded_amount": ZERO} for status in PaymentStatus.ALL
        }
        gross = refunded = ZERO
        collected_count = 0
        for status, count, amount, refunded_amount in self.repo.get_payments_by_status(self.db):
            payments_by_status[status] = {
                "count": count,
                "amount": to_money(amount),
                "refunded_amount": to_money(refunded_amount),
            }
            if status in COLLECTED_STATUSES:
                gross += to_money(amount)
                refunded += to_money(refunded_amount)
                collected_count += count

        referrals = self.repo.get_referral_totals(self.db)
        leaders = self.repo.get_top_agents(self.db, top_agents)

        logger.info(f"📊 Platform summary built for the last {period_days} days")
        return {
            "period": {"days": period_days, "start_date": start, "end_date": end},
            "users": {
                "total": sum(users_by_role.values()),
                "by_role": users_by_role,
                **activity,
            },
            "appointments": {
                "total": total_appointments,
                "by_status": appointments_by_status,
                "in_period": period["in_period"],
                "completed_in_period": period["completed_in_period"],
                "completion_rate": percentage(period["completed_in_period"], period["in_period"]),
                "cancellation_rate": percentage(
                    appointments_by_status[AppointmentStatus.CANCELLED], total_appointments
                ),
            },
            "revenue": {
                "gross_collected": gross,
                "total_refunded": refunded,
                "net_revenue": gross - refunded,
                "collected_in_period": to_money(self.repo.get_collected_since(self.db, start)),
                "average_payment": to_money(gross / collected_count) if collected_count else ZERO,
                "by_status": payments_by_status,
                "by_method": {
                    method: {"count": count, "amount": to_money(amount)}
                    for method, count, amount in self.repo.get_collected_by_method(self.db)
                },
            },
            "referral_program": {
                "total_codes": referrals["total_codes"],
                "active_codes": referrals["active_codes"],
                "counted_usages": referrals["counted_usages"],
                "reversed_usages": referrals["reversed_usages"],
                "total_commission": to_money(referrals["total_commission"]),
                "total_discount": to_money(referrals["total_discount"]),
                "top_agents": [
                    {
                        "agent_id": agent_id,
                        "agent_name": name,
                        "agent_code": agent_code,
                        "referrals": count,
                        "commission": to_money(commission),
                    }
                    for agent_id, name, agent_code, count, commission in leaders
                ],
            },
        }
