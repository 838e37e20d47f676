from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from files_control.db import get_db
from files_control.models.user import User
from files_control.services.users import users


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def get_optional_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User | None:
    return users.current(db, _extract_bearer_token(authorization))


def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


__all__ = ["get_db", "get_current_user", "get_optional_user"]
