"""Unit tests for access token helpers"""

from datetime import timedelta

from jose import jwt

from app.core.config import settings
from app.core.security import create_access_token, decode_token, get_principal_id


def test_token_round_trip():
    token = create_access_token("user-1", email="owner@example.com")

    payload = decode_token(token)
    assert payload["sub"] == "user-1"
    assert payload["email"] == "owner@example.com"
    assert get_principal_id(token) == "user-1"


def test_expired_token_is_rejected():
    token = create_access_token("user-1", expires_delta=timedelta(seconds=-1))
    assert decode_token(token) is None
    assert get_principal_id(token) is None


def test_token_signed_with_other_key_is_rejected():
    token = jwt.encode({"sub": "user-1"}, "x" * 40, algorithm=settings.JWT_ALGORITHM)
    assert get_principal_id(token) is None


def test_token_without_subject():
    token = jwt.encode({"email": "a@b.c"}, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    assert decode_token(token) == {"email": "a@b.c"}
    assert get_principal_id(token) is None


def test_garbage_token():
    assert get_principal_id("not-a-token") is None
