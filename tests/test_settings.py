"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.config import DEFAULT_USERS, Settings


def test_default_users_are_the_shared_pair() -> None:
    settings = Settings(_env_file=None)

    assert settings.users == DEFAULT_USERS
    assert settings.user_ids == ("u1", "u2")


def test_users_parse_from_pairs() -> None:
    """USERS accepts ``id:Name`` pairs separated by commas."""

    settings = Settings(_env_file=None, USERS="u1:Jesús, u2:Julia ,u3:Ana")

    assert settings.user_ids == ("u1", "u2", "u3")
    assert [user.name for user in settings.users] == ["Jesús", "Julia", "Ana"]


def test_users_without_name_fall_back_to_id() -> None:
    settings = Settings(_env_file=None, USERS="solo")

    assert settings.users[0].id == "solo"
    assert settings.users[0].name == "solo"


def test_users_blank_defaults() -> None:
    settings = Settings(_env_file=None, USERS="")

    assert settings.users == DEFAULT_USERS


def test_users_accept_dictionaries() -> None:
    settings = Settings(_env_file=None, USERS=[{"id": "a", "name": "Ana"}])

    assert settings.user_ids == ("a",)


def test_duplicate_user_ids_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, USERS="u1:Jesús,u1:Julia")


def test_users_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("USERS", "x:Xavi,y:Yolanda")

    settings = Settings(_env_file=None)

    assert settings.user_ids == ("x", "y")


def test_search_timeout_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, SEARCH_TIMEOUT=0)
