"""
Identity tokens, password hashing and the access gates used by the routes.

Tokens are HS256 JWTs carrying the user id in "sub" and the role flag in
"isAdmin". Clients send them in the `x-auth-token` header or as a bearer token.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from errors import Forbidden, InvalidToken, Unauthenticated

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
token_header = APIKeyHeader(name="x-auth-token", auto_error=False)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth", auto_error=False)


@dataclass(frozen=True)
class Identity:
    subject_id: str
    is_admin: bool = False


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def issue_token(settings: Settings, subject_id: str, is_admin: bool = False,
                expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {"sub": str(subject_id), "isAdmin": bool(is_admin), "exp": expire}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def verify_token(settings: Settings, token: str) -> Identity:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise InvalidToken()
    subject_id = payload.get("sub")
    if not subject_id:
        raise InvalidToken()
    return Identity(subject_id=subject_id, is_admin=bool(payload.get("isAdmin", False)))


def get_current_identity(
    request: Request,
    header_token: Optional[str] = Depends(token_header),
    bearer_token: Optional[str] = Depends(oauth2_scheme),
) -> Identity:
    token = header_token or bearer_token
    if not token:
        raise Unauthenticated()
    return verify_token(request.app.state.settings, token)


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden()
    return identity
