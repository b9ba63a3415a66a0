# tests/test_auth_utils.py
import os
import sys
from datetime import timedelta, datetime, timezone

import pytest

# make project importable
ROOT_DIR = os.path.dirname(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from jose import jwt, JWTError

from config import Settings
from auth import (
    get_password_hash,
    verify_password,
    create_access_token,
    decode_access_token,
    build_password_context,
    password_needs_rehash,
    SECRET_KEY,
    ALGORITHM,
)


def test_password_hash_and_verify_roundtrip():
    plain = "MySecureP@ssw0rd"

    hashed = get_password_hash(plain)

    assert hashed != plain  # definitely not storing plaintext
    assert hashed.startswith("$argon2id$")
    assert verify_password(plain, hashed) is True


def test_verify_password_wrong_password():
    hashed = get_password_hash("correct-horse-battery-staple")
    assert verify_password("wrong-password", hashed) is False


def test_hash_rejects_huge_password():
    with pytest.raises(ValueError):
        get_password_hash("x" * 257)


def test_create_access_token_contains_sub_and_exp():
    data = {"sub": "ana@example.com"}
    delta = timedelta(minutes=5)

    token = create_access_token(data=data, expires_delta=delta)

    assert isinstance(token, str)
    decoded = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

    assert decoded["sub"] == "ana@example.com"
    assert "exp" in decoded

    # exp should be in the future (within ~10 minutes)
    exp = datetime.fromtimestamp(decoded["exp"], tz=timezone.utc)
    now = datetime.now(timezone.utc)
    assert now < exp < now + timedelta(minutes=10)


def test_decode_access_token_roundtrip():
    token = create_access_token({"sub": "ana@example.com", "user_id": 7})
    payload = decode_access_token(token)
    assert payload["sub"] == "ana@example.com"
    assert payload["user_id"] == 7


def test_decode_expired_token_raises():
    token = create_access_token({"sub": "ana@example.com"}, expires_delta=timedelta(minutes=-1))
    with pytest.raises(JWTError):
        decode_access_token(token)


def test_decode_token_signed_with_other_key_raises():
    token = jwt.encode({"sub": "ana@example.com"}, "another-secret", algorithm=ALGORITHM)
    with pytest.raises(JWTError):
        decode_access_token(token)


def test_hash_uses_configured_argon2_parameters():
    hashed = get_password_hash("MySecureP@ssw0rd")
    assert "$m=65536,t=3,p=1$" in hashed
    assert password_needs_rehash(hashed) is False


def test_password_context_follows_settings(monkeypatch):
    monkeypatch.setenv("ARGON2_MEMORY_COST", "8192")
    monkeypatch.setenv("ARGON2_TIME_COST", "1")
    monkeypatch.setenv("ARGON2_PARALLELISM", "2")
    cheap = build_password_context(Settings())

    hashed = cheap.hash("MySecureP@ssw0rd")
    assert "$m=8192,t=1,p=2$" in hashed
    # still verifies with the default context, but is flagged for an upgrade
    assert verify_password("MySecureP@ssw0rd", hashed) is True
    assert password_needs_rehash(hashed) is True
