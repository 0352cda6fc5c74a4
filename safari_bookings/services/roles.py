from sqlalchemy.orm import Session

from ..models.user_role import UserRole, AppRole


def has_role(db: Session, user_id: str, role: AppRole) -> bool:
    """Server-side role check backed by the user_roles table"""
    if not user_id:
        return False
    return db.query(UserRole.id).filter(
        UserRole.user_id == user_id,
        UserRole.role == role.value
    ).first() is not None


def is_admin(db: Session, user_id: str) -> bool:
    return has_role(db, user_id, AppRole.ADMIN)
