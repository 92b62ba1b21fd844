import os
from dotenv import load_dotenv
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from db import get_db
from errors import UnauthenticatedError, PermissionDeniedError
from models import User

load_dotenv()
MASTER_ADMIN_ROLE = os.getenv("MASTER_ADMIN_ROLE", "Master Admin")

def get_requester(x_user_id: str = Header(default=""), db: Session = Depends(get_db)) -> User:
    """Resolve the session user forwarded by the auth layer in front of the API."""
    if not x_user_id:
        raise UnauthenticatedError("Not authenticated")
    user = db.get(User, x_user_id)
    if not user or not user.is_active:
        raise UnauthenticatedError("Not authenticated")
    return user

def require_master_admin(requester: User = Depends(get_requester)) -> User:
    if requester.user_type != MASTER_ADMIN_ROLE:
        raise PermissionDeniedError("Access denied")
    return requester
