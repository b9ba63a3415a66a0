"""Password hashing and bearer tokens for the Finance Tracker API."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from passlib.context import CryptContext

from config import Settings, settings

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES
MAX_PASSWORD_LENGTH = 256


def build_password_context(cfg: Settings) -> CryptContext:
    """Argon2id context tuned from the ARGON2_* settings.

    Hashes made with other parameters still verify and are reported by
    password_needs_rehash.
    """
    return CryptContext(
        schemes=["argon2"],
        deprecated="auto",
        argon2__type="ID",
        argon2__memory_cost=cfg.ARGON2_MEMORY_COST,  # KiB
        argon2__time_cost=cfg.ARGON2_TIME_COST,
        argon2__parallelism=cfg.ARGON2_PARALLELISM,
    )


pwd_context = build_password_context(settings)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValueError("Password too long")
    return pwd_context.hash(password)


def password_needs_rehash(hashed_password: str) -> bool:
    """True when the stored hash was made with different Argon2 parameters."""
    return pwd_context.needs_update(hashed_password)


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Sign a JWT carrying data plus an exp claim (default lifetime from settings)."""
    claims = dict(data)
    lifetime = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    claims["exp"] = datetime.now(timezone.utc) + lifetime
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a token; raises jose.JWTError when invalid or expired."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
