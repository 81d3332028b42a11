"""Authentication helpers and FastAPI security dependencies.

This module provides utilities to decode JWT tokens and the FastAPI
dependencies `get_current_user`, `get_current_student` and
`get_current_teacher`. The bearer token's `role` claim decides whether
the account is looked up among students or teachers.

Token verification raises HTTP exceptions on failure so the helpers can
be used directly inside route dependencies.
"""

from typing import Optional, Union

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session
from .exceptions import CredentialsException, ForbiddenException

bearer_scheme = HTTPBearer(auto_error=False)

Account = Union[models.Student, models.Teacher]


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises a 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise CredentialsException("token expired")
    except jwt.PyJWTError:
        raise CredentialsException("invalid token")


def load_account(session: Session, payload: dict) -> Optional[Account]:
    """Return the Student or Teacher named by a token payload, if it exists."""
    user_id = payload.get("user_id")
    role = payload.get("role")
    if not isinstance(user_id, int):
        return None
    if role == models.Student.role:
        return repositories.StudentRepository(session).get(user_id)
    if role == models.Teacher.role:
        return repositories.TeacherRepository(session).get(user_id)
    return None


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    session: Session = Depends(get_session),
) -> Account:
    """FastAPI dependency that returns the authenticated account.

    Raises 401 for a missing, invalid or expired token and for tokens
    whose account no longer exists.
    """
    if credentials is None:
        raise CredentialsException("Not authenticated")
    payload = decode_token(credentials.credentials)
    user = load_account(session, payload)
    if not user:
        raise CredentialsException("user not found")
    return user


def get_current_student(user: Account = Depends(get_current_user)) -> models.Student:
    if user.role != models.Student.role:
        raise ForbiddenException("Only students can perform this action")
    return user


def get_current_teacher(user: Account = Depends(get_current_user)) -> models.Teacher:
    if user.role != models.Teacher.role:
        raise ForbiddenException("Only teachers can perform this action")
    return user
