import logging
import secrets
from datetime import datetime, timedelta
from html import escape

from fastapi import APIRouter, Depends, HTTPException, Request, status
from jose import JWTError
from sqlalchemy.orm import Session

import auth_schemas
import auth_utils
import config
import email_service
import models
import notifier
from database import get_db
from connections import get_registry
from errors import Conflict, InvalidOperation, NotFound, ExternalServiceFailure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/register", response_model=auth_schemas.Token, status_code=status.HTTP_201_CREATED)
def register(user: auth_schemas.UserCreate, db: Session = Depends(get_db)):
    domain = config.ALLOWED_EMAIL_DOMAIN
    if domain and not user.email.lower().endswith(domain.lower()):
        raise InvalidOperation(f"Registration is only allowed for emails with domain {domain}")

    # Check if user already exists
    db_user = db.query(models.User).filter(models.User.email == user.email).first()
    if db_user:
        raise Conflict("User already exists")

    db_user = models.User(
        email=user.email,
        hashed_password=auth_utils.get_password_hash(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        role=models.UserRole.MEMBER.value,
        created_at=datetime.utcnow(),
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("Registered user %s", db_user.email)
    return {"access_token": auth_utils.token_for_user(db_user), "token_type": "bearer", "user": db_user}


@router.post("/login", response_model=auth_schemas.Token)
def login(request: Request, login_data: auth_schemas.UserLogin, db: Session = Depends(get_db)):
    client_ip = request.client.host if request.client else None

    user = db.query(models.User).filter(models.User.email == login_data.email).first()
    if not user or not auth_utils.verify_password(login_data.password, user.hashed_password):
        logger.info("Failed login for %s from %s", login_data.email, client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info("Login for %s (%s) from %s", user.email, user.role, client_ip)
    return {"access_token": auth_utils.token_for_user(user), "token_type": "bearer", "user": user}


@router.post("/forgot-password")
def forgot_password(payload: auth_schemas.ForgotPassword, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.email == payload.email).first()
    if not user:
        raise NotFound("User not found")

    reset_token = auth_utils.create_access_token(
        data={"sub": user.email, "purpose": "reset", "nonce": secrets.token_hex(8)},
        expires_delta=timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES),
    )
    user.reset_token = reset_token
    user.reset_token_expiry = datetime.utcnow() + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES)
    db.commit()

    reset_url = f"{config.CLIENT_URL}/reset-password/{reset_token}"
    html = email_service.render(
        "BookHive Password Reset",
        f"Hello {escape(user.first_name)},<br><br>You have requested to reset your password. "
        "Please click the button below to set a new password. This link will expire in 1 hour.<br><br>"
        "If you didn't request this, please ignore this email.",
        link=reset_url,
        link_label="Reset Password",
    )
    try:
        email_service.send_email(user.email, "Password Reset Request", html)
    except ExternalServiceFailure as e:
        raise ExternalServiceFailure(f"Error sending password reset email: {e.message}")
    return {"message": "Password reset email sent"}


@router.post("/reset-password")
def reset_password(
    payload: auth_schemas.ResetPassword,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
):
    invalid = InvalidOperation("Invalid or expired reset token")
    try:
        claims = auth_utils.decode_token(payload.token)
    except JWTError:
        raise invalid
    if claims.get("purpose") != "reset":
        raise invalid

    user = (
        db.query(models.User)
        .filter(
            models.User.email == claims.get("sub"),
            models.User.reset_token == payload.token,
            models.User.reset_token_expiry > datetime.utcnow(),
        )
        .first()
    )
    if not user:
        raise invalid

    user.hashed_password = auth_utils.get_password_hash(payload.new_password)
    user.reset_token = None
    user.reset_token_expiry = None
    db.commit()

    notifier.password_reset_completed(registry, user)
    return {"message": "Password successfully reset"}


@router.get("/me", response_model=auth_schemas.UserInDB)
def read_users_me(current_user: models.User = Depends(auth_utils.get_current_user)):
    return current_user
