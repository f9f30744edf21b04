"""Directory router - admin endpoints for doctor approval and agent status"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import require_roles
from ...database import get_db
from ...models import User
from ...shared.constants import Role
from .schemas import AgentStatusUpdate, DoctorApprovalUpdate, UserResponse
from .service import DirectoryService

router = APIRouter(prefix="/admin", tags=["Admin - Directory"])


def get_directory_service(db: Session = Depends(get_db)) -> DirectoryService:
    """Dependency injection for DirectoryService"""
    return DirectoryService(db)


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    role: Optional[str] = None,
    _admin: User = Depends(require_roles(Role.ADMIN)),
    service: DirectoryService = Depends(get_directory_service),
):
    return service.list_users(role)


@router.patch("/doctors/{doctor_id}/approval", response_model=UserResponse)
async def set_doctor_approval(
    doctor_id: int,
    body: DoctorApprovalUpdate,
    admin: User = Depends(require_roles(Role.ADMIN)),
    service: DirectoryService = Depends(get_directory_service),
):
    return service.set_doctor_approval(doctor_id, body.is_approved, admin)


@router.patch("/agents/{agent_id}/status", response_model=UserResponse)
async def set_agent_status(
    agent_id: int,
    body: AgentStatusUpdate,
    admin: User = Depends(require_roles(Role.ADMIN)),
    service: DirectoryService = Depends(get_directory_service),
):
    return service.set_agent_status(agent_id, body.is_active, admin)
