import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from config import BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_EXPIRE_HOURS, JWT_SECRET
from database import get_db
from errors import AuthError
from models import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


def create_token(user_id: int, username: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "username": username,
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRE_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> int:
    """Resolve a bearer token to the user id it was issued for."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("user_id")
    if not isinstance(user_id, int):
        raise AuthError("Token does not contain a user id")
    return user_id


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError("No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Malformed authorization header")
    return token.strip()


def resolve_viewer(db: Session, token: str) -> int:
    user_id = decode_token(token)
    if db.get(User, user_id) is None:
        logger.info(f"Rejected token for missing user {user_id}")
        raise AuthError("Account no longer exists")
    return user_id


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> int:
    return resolve_viewer(db, bearer_token(authorization))
