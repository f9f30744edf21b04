"""Directory repository - user lookups consumed by the booking core"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import User
from ...shared.constants import Role


class UserRepository:
    """Repository for user database operations"""

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_bookable_doctor(db: Session, doctor_id: int) -> Optional[User]:
        """Active, admin-approved doctor"""
        return (
            db.query(User)
            .filter(
                User.id == doctor_id,
                User.role == Role.DOCTOR,
                User.is_active.is_(True),
                User.is_approved.is_(True),
            )
            .first()
        )

    @staticmethod
    def find_active_agent_by_code(db: Session, agent_code: str) -> Optional[User]:
        return (
            db.query(User)
            .filter(
                User.agent_code == agent_code.strip().upper(),
                User.role == Role.AGENT,
                User.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def list_users(db: Session, role: Optional[str] = None) -> list[User]:
        query = db.query(User)
        if role:
            query = query.filter(User.role == role)
        return query.order_by(User.id).all()
