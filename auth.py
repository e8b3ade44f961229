"""
Authentication & authorization: bcrypt password hashes, JWT bearer tokens,
and the FastAPI dependencies that guard user and admin routes.
"""
import logging
from datetime import timedelta
from typing import Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_EXPIRES_DAYS, JWT_SECRET
from database import get_document, utcnow

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_token(user_id: str) -> str:
    payload = {
        "sub": user_id,
        "iat": utcnow(),
        "exp": utcnow() + timedelta(days=JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[Dict]:
    """Return the token claims, or None when the token is invalid or expired."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as exc:
        logger.info("Rejected token: %s", exc)
        return None


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Dict:
    if credentials is None or not credentials.credentials:
        raise HTTPException(401, "Not authorized, no token")
    claims = decode_token(credentials.credentials)
    if claims is None or "sub" not in claims:
        raise HTTPException(401, "Not authorized, token failed")
    user = get_document("user", claims["sub"])
    if not user:
        raise HTTPException(401, "Not authorized, user not found")
    return user


def require_admin(user: Dict = Depends(get_current_user)) -> Dict:
    if user.get("role") != "admin":
        logger.warning("Non-admin %s tried an admin route", user["_id"])
        raise HTTPException(403, "Not authorized as admin")
    return user
