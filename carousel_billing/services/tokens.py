from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app

def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("AUTH_TOKEN_SALT", "auth-token-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)

def generate(user_id: int) -> str:
    return _serializer().dumps({"k": "auth", "u": int(user_id)})

def verify(token: str, max_age_seconds: Optional[int] = None) -> Optional[int]:
    if not token:
        return None
    if max_age_seconds is None:
        max_age_seconds = current_app.config.get("AUTH_TOKEN_MAX_AGE", 60 * 60 * 24 * 7)
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or data.get("k") != "auth":
        return None
    try:
        return int(data.get("u"))
    except (TypeError, ValueError):
        return None
