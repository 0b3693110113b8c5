"""Resolve the requesting user from a bearer token.

Tokens are issued elsewhere; this module only verifies them and loads the
matching `User`, which route handlers receive as an explicit dependency.
"""

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from levelquiz.config import settings
from levelquiz.database import get_db
from levelquiz.errors import UnauthenticatedError
from levelquiz.models import User

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthenticatedError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthenticatedError("Invalid token") from exc


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise UnauthenticatedError("Not authenticated")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthenticatedError("Invalid token payload")
    user = db.get(User, user_id)
    if not user:
        raise UnauthenticatedError("User not found")
    return user
