"""Analytics router - admin platform summary"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import require_roles
from ...database import get_db
from ...models import User
from ...shared.constants import Role
from .schemas import PlatformAnalyticsResponse
from .service import AnalyticsService

router = APIRouter(prefix="/admin/analytics", tags=["Admin - Analytics"])


def get_analytics_service(db: Session = Depends(get_db)) -> AnalyticsService:
    """Dependency injection for AnalyticsService"""
    return AnalyticsService(db)


@router.get("", response_model=PlatformAnalyticsResponse)
async def get_platform_analytics(
    period: int = 30,
    top_agents: int = 5,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Users, appointments, revenue and referral figures for the last `period` days"""
    return service.platform_summary(period_days=period, top_agents=min(max(top_agents, 1), 50))
