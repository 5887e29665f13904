from datetime import datetime, timezone
from typing import Dict, Any

from jose import jwt, JWTError
from fastapi import HTTPException, status, Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.core.errors import store_errors
from atelier.models import User, UserRole

# tokens are issued by the auth service; this app only reads them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

STAFF_ROLES = {UserRole.ADMIN, UserRole.STAFF}


def verify_token(token: str) -> Dict[str, Any]:
    """Verify JWT token"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    """
    Principal carried by the bearer token: ``{user_id, role, branch_id?}``.
    """
    payload = verify_token(token)
    user_id = payload.get("user_id")
    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        role = None
    if not user_id or role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    return {
        "user_id": str(user_id),
        "role": role,
        "branch_id": payload.get("branch_id"),
    }


def require_staff(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user["role"] not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return current_user


def check_branch(current_user: Dict[str, Any], branch_id: str):
    """Principals bound to a branch cannot act on another one; admins roam."""
    if current_user["role"] == UserRole.ADMIN:
        return
    if current_user.get("branch_id") and current_user["branch_id"] != branch_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed on this branch",
        )


def parse_instant(value: str, field: str = "date") -> datetime:
    """ISO instant from a request, as a naive datetime in the stored clock."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field}: {value!r}",
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed



def get_branch_member(db: Session, user_id: str, branch_id: str, role: UserRole) -> User:
    """Active user of ``role`` in the branch, else 404."""
    with store_errors("load branch member"):
        user = db.query(User).filter(
            User.id == user_id,
            User.branch_id == branch_id,
            User.role == role,
            User.is_active == True
        ).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{role.value.capitalize()} not found in this branch"
        )
    return user
