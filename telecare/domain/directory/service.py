"""Directory service - admin approval of doctors and activation of agents"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import NotFoundError, ValidationFailedError
from ...models import User
from ...shared.constants import Role
from .repository import UserRepository

logger = logging.getLogger(__name__)


class DirectoryService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = UserRepository()

    def _get_with_role(self, user_id: int, role: str) -> User:
        user = self.repo.get_user_by_id(self.db, user_id)
        if not user or user.role != role:
            raise NotFoundError(f"{role.capitalize()} not found")
        return user

    def list_users(self, role: Optional[str] = None) -> list[User]:
        if role and role not in Role.ALL:
            raise ValidationFailedError(f"Unknown role: {role}")
        return self.repo.list_users(self.db, role)

    def set_doctor_approval(self, doctor_id: int, is_approved: bool, admin: User) -> User:
        """Approved doctors become bookable; unapproving leaves existing appointments alone"""
        doctor = self._get_with_role(doctor_id, Role.DOCTOR)
        try:
            doctor.is_approved = is_approved
            self.db.commit()
            self.db.refresh(doctor)
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"🩺 Doctor {doctor.id} {'approved' if is_approved else 'unapproved'} by admin {admin.id}"
        )
        return doctor

    def set_agent_status(self, agent_id: int, is_active: bool, admin: User) -> User:
        """Inactive agents cannot be issued codes or record cash payments"""
        agent = self._get_with_role(agent_id, Role.AGENT)
        try:
            agent.is_active = is_active
            self.db.commit()
            self.db.refresh(agent)
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🧑‍💼 Agent {agent.id} {'activated' if is_active else 'deactivated'} by admin {admin.id}")
        return agent
