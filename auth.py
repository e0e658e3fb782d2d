import argparse
import logging
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings

logger = logging.getLogger(__name__)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: str) -> str:
    if not user_id or not user_id.strip():
        raise ValueError("User id cannot be empty")
    return _serializer().dumps({"u": user_id.strip()})


def resolve_session_token(token: Optional[str]) -> Optional[str]:
    """User id carried by ``token``, or ``None`` when it is missing or invalid."""
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("session_token_expired")
        return None
    except BadSignature:
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    return user_id or None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def main() -> None:
    parser = argparse.ArgumentParser(description="Print a session token for a user id")
    parser.add_argument("user_id")
    args = parser.parse_args()
    print(issue_session_token(args.user_id))


if __name__ == "__main__":
    main()
