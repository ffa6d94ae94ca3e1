import datetime
import logging
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Not a hash passlib recognises
        return False


def create_access_token(
    data: Dict[str, Any], settings: Settings, expires_delta: Optional[datetime.timedelta] = None
) -> Tuple[str, datetime.datetime]:
    """
    Sign a short-lived access token.

    ``data`` must carry ``sub`` (the user id). Returns the token and its expiry.
    """
    now = datetime.datetime.utcnow()
    expire = now + (expires_delta or datetime.timedelta(minutes=settings.jwt_expires_minutes))
    to_encode = data.copy()
    to_encode.update({"type": "access", "exp": expire, "iat": now})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm), expire


def decode_access_token(token: str, settings: Settings) -> Optional[Dict[str, Any]]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug("Access token rejected", extra={"error": str(e)})
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload


def create_refresh_token(user_id: str, token_id: str, settings: Settings) -> Tuple[str, datetime.datetime]:
    now = datetime.datetime.utcnow()
    expire = now + datetime.timedelta(days=settings.refresh_token_expires_days)
    to_encode = {"sub": user_id, "jti": token_id, "type": "refresh", "exp": expire, "iat": now}
    return jwt.encode(to_encode, settings.refresh_token_secret, algorithm=settings.jwt_algorithm), expire


def decode_refresh_token(token: str, settings: Settings) -> Optional[Dict[str, Any]]:
    try:
        payload = jwt.decode(token, settings.refresh_token_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug("Refresh token rejected", extra={"error": str(e)})
        return None
    if payload.get("type") != "refresh" or not payload.get("sub") or not payload.get("jti"):
        return None
    return payload
