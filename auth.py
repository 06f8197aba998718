from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import UnauthenticatedError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="auth-subject")


def issue_token(subject: str, email: str, name: Optional[str] = None) -> str:
    return _serializer().dumps({"sub": subject, "email": email, "name": name})


def read_token(token: Optional[str]) -> dict[str, Optional[str]]:
    if not token:
        raise UnauthenticatedError("Unauthorized")
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.auth_max_age_secs)
    except SignatureExpired as exc:
        raise UnauthenticatedError("Session expired") from exc
    except BadSignature as exc:
        raise UnauthenticatedError("Unauthorized") from exc

    if not isinstance(data, dict) or not data.get("sub") or not data.get("email"):
        raise UnauthenticatedError("Unauthorized")
    return data


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
