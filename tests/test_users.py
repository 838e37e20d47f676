import pytest

from files_control.services.errors import InvalidArgumentError
from files_control.services.users import hash_api_token, users


def test_create_user_returns_token(db_session):
    user, token = users.create(db_session, "  Alice@Example.com ", "Alice")

    assert user.email == "alice@example.com"
    assert user.api_token_hash == hash_api_token(token)
    assert token not in user.api_token_hash


def test_create_user_requires_email(db_session):
    with pytest.raises(InvalidArgumentError):
        users.create(db_session, "   ")


def test_current_resolves_token(db_session, api_user):
    user, token = api_user

    assert users.current(db_session, token).id == user.id
    assert users.current(db_session, "wrong-token") is None
    assert users.current(db_session, None) is None


def test_list_users_paginates(db_session):
    for index in range(3):
        users.create(db_session, f"user{index}@example.com")

    assert len(users.list(db_session, limit=2)) == 2
    assert len(users.list(db_session, limit=10, offset=2)) == 1
