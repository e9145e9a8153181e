import hmac
import logging
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import AuthError
from models import User

logger = logging.getLogger(__name__)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="member-token")


def issue_token(auth_user_id: str) -> str:
    return _serializer().dumps({"sub": auth_user_id})


def verify_token(token: str, max_age: Optional[int] = None) -> str:
    """Return the ``auth_user_id`` carried by a bearer token."""
    if max_age is None:
        max_age = get_settings().auth_token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise AuthError("Token expired") from exc
    except BadSignature as exc:
        raise AuthError("Invalid token") from exc
    subject = data.get("sub") if isinstance(data, dict) else None
    if not subject:
        raise AuthError("Invalid token")
    return subject


def bearer_credential(authorization: Optional[str]) -> str:
    scheme, _, credential = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise AuthError("Missing bearer credential")
    return credential.strip()


def resolve_member(session: Session, authorization: Optional[str]) -> User:
    auth_user_id = verify_token(bearer_credential(authorization))
    user = session.scalar(select(User).where(User.auth_user_id == auth_user_id))
    if user is None:
        logger.info(f"auth_rejected: reason=unknown_member subject={auth_user_id}")
        raise AuthError("Not a workspace member")
    return user


def check_webhook_key(authorization: Optional[str]) -> None:
    credential = bearer_credential(authorization)
    if not hmac.compare_digest(credential, get_settings().webhook_key):
        raise AuthError("Invalid webhook key")


def check_signup_secret(secret: Optional[str]) -> None:
    if not secret or not hmac.compare_digest(secret, get_settings().signup_secret):
        raise AuthError("Invalid signup secret")
