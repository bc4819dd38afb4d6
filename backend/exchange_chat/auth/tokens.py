"""Access token verification for chat connections.

Token issuance belongs to the authentication service; the chat service only
needs to turn a bearer token into a user id. Tokens are HS256 JWTs whose
``sub`` claim is the user id.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from exchange_chat.config import get_config
from exchange_chat.errors import Unauthenticated

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, expires_minutes: int = 60) -> str:
    """Issue a token for ``user_id`` (development and tests only)."""
    secrets = get_config().secrets.jwt
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=expires_minutes)
    payload = {"sub": user_id, "iat": int(now.timestamp()), "exp": int(exp.timestamp())}
    return jwt.encode(payload, secrets.secret_key, algorithm=secrets.algorithm)


def decode_access_token(token: Optional[str]) -> str:
    """Return the user id carried by ``token``.

    Raises:
        Unauthenticated: If the token is missing, expired, malformed or has
            no subject.
    """
    if not token:
        raise Unauthenticated("Missing access token")
    secrets = get_config().secrets.jwt
    try:
        payload = jwt.decode(token, secrets.secret_key, algorithms=[secrets.algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Access token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected token: %s", e)
        raise Unauthenticated("Invalid access token")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Access token has no subject")
    return str(user_id)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
