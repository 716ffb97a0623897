import hashlib
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings


def get_token_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="mcleuker-access-token",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_access_token(user_id: str, email: str | None) -> str:
    """Sign an identity for the Authorization header. Used by the auth platform and tests."""
    return get_token_serializer().dumps({"user_id": user_id, "email": email})


def load_access_token(token: str, max_age_seconds: int | None = None) -> dict[str, Any] | None:
    serializer = get_token_serializer()
    if max_age_seconds is None:
        max_age_seconds = get_settings().access_token_max_age
    try:
        payload = serializer.loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    return payload if isinstance(payload, dict) else None


def parse_bearer(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
