import re

import bcrypt
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import AuthenticationError, ValidationError
from models import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login")


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=12)).decode(
        "utf-8"
    )


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise ValidationError("Password must contain at least one letter and one number")


def create_access_token(user_id: int) -> str:
    return _serializer().dumps({"uid": user_id})


def decode_access_token(token: str, max_age: int = 0) -> int:
    max_age = max_age or get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise AuthenticationError("Token expired") from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid token") from exc
    user_id = data.get("uid") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise AuthenticationError("Invalid token")
    return user_id


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    try:
        user_id = decode_access_token(token)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=401,
            detail="Invalid token or user not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
