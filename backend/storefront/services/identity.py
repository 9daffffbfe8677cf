"""
Identity Service

Resolves a bearer access token (HS256, issued by the hosted identity
provider) to an Identity, including the admin capability from user_roles.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import UserRoleModel
from ..exceptions import AuthError
from ..models.catalog import Identity

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature, expiry and audience of an access token.

    Raises:
        AuthError: Token invalid, expired or missing the sub claim
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Session expired, please sign in again") from e
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected access token: {e}")
        raise AuthError("Invalid access token") from e

    if not claims.get("sub"):
        raise AuthError("Access token has no subject")
    return claims


async def is_admin(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(
        select(UserRoleModel.user_id)
        .where(UserRoleModel.user_id == user_id)
        .where(UserRoleModel.role == "admin")
    )
    return result.scalar_one_or_none() is not None


async def get_identity_from_token(db: AsyncSession, token: Optional[str]) -> Identity:
    """
    Identity behind a bearer token.

    Raises:
        AuthError: No token, or token rejected
    """
    if not token:
        raise AuthError()

    claims = decode_token(token)
    user_id = claims["sub"]
    return Identity(id=user_id, is_admin=await is_admin(db, user_id), email=claims.get("email"))


def issue_token(user_id: str, email: Optional[str] = None, expires_in_minutes: int = 60) -> str:
    """Mint an access token (local development and tests)."""
    now = datetime.utcnow()
    claims = {
        "sub": user_id,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + timedelta(minutes=expires_in_minutes),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGORITHM)
