from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from files_control.api.deps import get_current_user, get_db
from files_control.models.user import User
from files_control.schemas.common import ListResponse
from files_control.schemas.users import UserRead
from files_control.services.common import list_response
from files_control.services.users import users

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=ListResponse[UserRead])
def list_users(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return list_response(users.list(db, limit, offset), limit, offset)


@router.get("/me", response_model=UserRead)
def current_user(user: User = Depends(get_current_user)):
    return user
