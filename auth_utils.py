from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import config
import models
from database import get_db

SECRET_KEY = config.SECRET_KEY
ALGORITHM = config.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = config.ACCESS_TOKEN_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="auth/login",
    # Do not automatically return a 401 when no token is provided.
    # get_current_user raises its own 401 with a consistent message.
    auto_error=False,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash."""
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    """Generate a password hash."""
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token with user data and expiration."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for_user(user: models.User) -> str:
    return create_access_token(data={"sub": user.email, "role": user.role})


def decode_token(token: str) -> dict:
    """Decode and verify a token. Raises JWTError when invalid or expired."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def user_from_token(token: Optional[str], db: Session) -> Optional[models.User]:
    """Return the user a token belongs to, or None if the token is missing or invalid."""
    if not token:
        return None
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    email = payload.get("sub")
    # password-reset tokens are not access tokens
    if email is None or payload.get("purpose"):
        return None
    return db.query(models.User).filter(models.User.email == email).first()


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> models.User:
    """Get the current user from the JWT token."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No authentication token, access denied",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = user_from_token(token, db)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_roles(*roles: models.UserRole):
    """Build a dependency that admits only users holding one of `roles`.

    Checks the role stored on the user row, not the token claim.
    """
    allowed = {r.value for r in roles}

    def dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action",
            )
        return current_user

    return dependency


get_admin_user = require_roles(models.UserRole.ADMIN)
get_librarian_user = require_roles(models.UserRole.LIBRARIAN, models.UserRole.ADMIN)
get_member_user = require_roles(models.UserRole.MEMBER)
get_any_role_user = require_roles(models.UserRole.MEMBER, models.UserRole.LIBRARIAN, models.UserRole.ADMIN)
