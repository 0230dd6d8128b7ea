import time
from typing import Optional

import bcrypt
from itsdangerous import (
    BadSignature,
    SignatureExpired,
    URLSafeSerializer,
    URLSafeTimedSerializer,
)

from config import get_settings


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def _timed(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret_key, salt=salt)


def _plain(salt: str) -> URLSafeSerializer:
    return URLSafeSerializer(get_settings().secret_key, salt=salt)


def issue_access_token(user_id: str) -> str:
    return _timed("access-token").dumps({"sub": user_id})


def read_access_token(token: str, max_age: Optional[int] = None) -> Optional[str]:
    max_age = max_age or get_settings().access_token_ttl_secs
    try:
        data = _timed("access-token").loads(token, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return None
    return data.get("sub")


def issue_confirmation_token(user_id: str, email: str) -> str:
    return _timed("email-confirm").dumps({"sub": user_id, "email": email})


def read_confirmation_token(token: str, max_age_hours: int = 48) -> Optional[dict]:
    try:
        return _timed("email-confirm").loads(token, max_age=max_age_hours * 3600)
    except (BadSignature, SignatureExpired):
        return None


def sign_session_id(session_id: str) -> str:
    return _plain("session-cookie").dumps(session_id)


def unsign_session_id(value: str) -> Optional[str]:
    try:
        return _plain("session-cookie").loads(value)
    except BadSignature:
        return None


def generate_csrf_token(session_id: str, max_age_hours: int = 2) -> str:
    serializer = _plain("csrf-token")
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"s": session_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(token: str, session_id: str) -> bool:
    serializer = _plain("csrf-token")
    try:
        data = serializer.loads(token)
    except BadSignature:
        return False

    if data.get("s") != session_id:
        return False

    current_time = int(time.time())
    expiry_time = data.get("exp", 0)

    if current_time > expiry_time:
        return False

    return True
