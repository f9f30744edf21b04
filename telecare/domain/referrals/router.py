"""Referral router - FastAPI endpoints for code validation and administration"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user, require_roles
from ...config import REFERRAL_VALIDATE_RATE_LIMIT
from ...database import get_db
from ...errors import PermissionDeniedError
from ...models import User
from ...rate_limiter import create_rate_limiter
from ...shared.constants import Role
from .schemas import (
    AgentCommissionResponse,
    AgentEarningsResponse,
    ReferralCodeCreate,
    ReferralCodeDeleteResponse,
    ReferralCodeResponse,
    ReferralCodeUpdate,
    ReferralValidateRequest,
    ReferralValidateResponse,
)
from .service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referrals", tags=["Referrals"])
admin_router = APIRouter(prefix="/admin/referral-codes", tags=["Admin - Referral Codes"])

validate_rate_limit = create_rate_limiter(
    limit=REFERRAL_VALIDATE_RATE_LIMIT, window_seconds=60, key_prefix="referral_validate"
)


def get_referral_service(db: Session = Depends(get_db)) -> ReferralService:
    """Dependency injection for ReferralService"""
    return ReferralService(db)


@router.post("/validate", response_model=ReferralValidateResponse)
async def validate_referral_code(
    body: ReferralValidateRequest,
    user: User = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
    _: None = Depends(validate_rate_limit),
):
    """Check a referral code for the current user and preview the discount"""
    decision = service.validate(body.code, user, body.order_amount)
    return {
        "valid": decision.accepted,
        "reason": decision.reason,
        "message": decision.message,
        "code": decision.referral.code if decision.accepted else None,
        "discount": decision.discount,
        "final_amount": decision.final_amount,
        "commission": decision.commission,
    }


@router.get("/my-codes", response_model=list[ReferralCodeResponse])
async def list_my_codes(
    agent: User = Depends(require_roles(Role.AGENT)),
    service: ReferralService = Depends(get_referral_service),
):
    """Codes owned by the current agent, with usage and earnings"""
    return service.list_codes(agent_id=agent.id)


@router.get("/agents/{agent_id}/earnings", response_model=AgentEarningsResponse)
async def get_agent_earnings(
    agent_id: int,
    user: User = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
):
    """Commission totals for an agent (admins, or the agent themself)"""
    if user.role != Role.ADMIN and user.id != agent_id:
        raise PermissionDeniedError("You can only view your own earnings")
    return service.get_agent_earnings(agent_id)


@router.get("/agents/{agent_id}/commissions", response_model=list[AgentCommissionResponse])
async def list_agent_commissions(
    agent_id: int,
    limit: int = 200,
    user: User = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
):
    """Per-appointment commission ledger, including reversed entries"""
    if user.role != Role.ADMIN and user.id != agent_id:
        raise PermissionDeniedError("You can only view your own commissions")
    return service.list_agent_commissions(agent_id, limit=min(max(limit, 1), 500))


# ============================================================================
# ADMIN CODE MANAGEMENT
# ============================================================================


@admin_router.get("", response_model=list[ReferralCodeResponse])
async def list_referral_codes(
    agent_id: Optional[int] = None,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: ReferralService = Depends(get_referral_service),
):
    return service.list_codes(agent_id=agent_id)


@admin_router.post("", response_model=ReferralCodeResponse, status_code=201)
async def create_referral_code(
    body: ReferralCodeCreate,
    admin: User = Depends(require_roles(Role.ADMIN)),
    service: ReferralService = Depends(get_referral_service),
):
    """Assign a new referral code to an agent"""
    code = service.create_code(body, admin)
    return service.describe_code(code)


@admin_router.get("/{code_id}/summary", response_model=ReferralCodeResponse)
async def get_referral_code_summary(
    code_id: int,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: ReferralService = Depends(get_referral_service),
):
    return service.describe_code(service.get_code(code_id))


@admin_router.patch("/{code_id}", response_model=ReferralCodeResponse)
async def update_referral_code(
    code_id: int,
    body: ReferralCodeUpdate,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: ReferralService = Depends(get_referral_service),
):
    code = service.update_code(code_id, body)
    return service.describe_code(code)


@admin_router.delete("/{code_id}", response_model=ReferralCodeDeleteResponse)
async def delete_referral_code(
    code_id: int,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: ReferralService = Depends(get_referral_service),
):
    """Delete an unused code, or deactivate one that has usage history"""
    return service.delete_code(code_id)
