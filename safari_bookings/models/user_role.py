import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, UniqueConstraint
from ..database import Base
import enum


class AppRole(str, enum.Enum):
    ADMIN = "admin"
    HOST = "host"


class UserRole(Base):
    """Server-side role grants; users live in the external identity provider"""
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
