import hashlib
import secrets

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from files_control.logging import get_logger
from files_control.models.user import User
from files_control.services.errors import DuplicateKeyError, InvalidArgumentError

logger = get_logger(__name__)


def hash_api_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Users:
    @staticmethod
    def create(db: Session, email: str, name: str | None = None) -> tuple[User, str]:
        """Create a user and return it with its plaintext API token."""
        email = (email or "").strip().lower()
        if not email:
            raise InvalidArgumentError("Email cannot be empty.")
        token = secrets.token_urlsafe(32)
        user = User(email=email, name=name, api_token_hash=hash_api_token(token))
        db.add(user)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateKeyError("User already exists.") from exc
        db.refresh(user)
        logger.info("user_created user_id=%s", user.id)
        return user, token

    @staticmethod
    def list(db: Session, limit: int = 100, offset: int = 0) -> list[User]:
        return (
            db.query(User)
            .order_by(User.created_at.asc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @staticmethod
    def current(db: Session, api_token: str | None) -> User | None:
        """Resolve a bearer token to its user; None when unauthenticated."""
        if not api_token:
            return None
        return (
            db.query(User)
            .filter(User.api_token_hash == hash_api_token(api_token))
            .first()
        )


users = Users()
