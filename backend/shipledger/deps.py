import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .db import get_db
from .errors import ApiError
from .models import User

logger = logging.getLogger(__name__)


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user from the X-User-Id header.

    Sessions and passwords live in front of this service; it only needs to
    know who is acting and with which role.
    """
    if not x_user_id:
        raise ApiError("AUTH_REQUIRED", status=401)
    user = db.get(User, x_user_id)
    if user is None:
        logger.warning("unknown user id in X-User-Id: %s", x_user_id)
        raise ApiError("AUTH_REQUIRED", status=401)
    return user


def require_role(*roles: str):
    """Dependency factory: only users with one of `roles` may pass."""
    allowed = {str(r) for r in roles}

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.info("user %s (%s) denied, needs one of %s", user.username, user.role, sorted(allowed))
            raise ApiError("PERMISSION_DENIED", status=403, details={"role": user.role})
        return user

    return checker
