from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from config import get_db, FRONTEND_URL, PASSWORD_RESET_EXPIRE_MINUTES
from models import User, Profile, RefreshToken, PasswordResetToken, UserRole, SELF_SERVICE_ROLES, utcnow
from utils.response_helpers import ApiResponse, success_response, safe_model_validate
from utils.notifications import send_email, get_password_reset_email, get_email_verification_email
from .schemas import (
    UserRegister,
    UserLogin,
    GoogleAuthRequest,
    RefreshTokenRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
    AuthResponse,
    TokenResponse,
    UserResponse,
    ProfileResponse,
)
from .helpers import auth_helpers, REFRESH_TOKEN_TYPE, EMAIL_VERIFY_TOKEN_TYPE
from datetime import timedelta
from typing import Optional
import secrets
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

security = HTTPBearer(auto_error=False)

FORGOT_PASSWORD_MESSAGE = "If an account exists with that email, a password reset link has been sent"


def serialize_user(user: User) -> UserResponse:
    """Build a UserResponse; the profile relationship must already be loaded"""
    profile = safe_model_validate(ProfileResponse, user.profile) if user.profile else None
    return safe_model_validate(
        UserResponse,
        user,
        has_google=user.google_id is not None,
        profile=profile
    )


def ensure_account_usable(user: User) -> None:
    if user.is_suspended:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is suspended"
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive"
        )


async def authenticate_token(token: str, db: AsyncSession) -> dict:
    """Resolve an access token to the current-user dict, checking the account is still usable"""
    payload = auth_helpers.verify_token(token)

    result = await db.execute(
        select(User).where(User.id == payload["sub"], User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )
    ensure_account_usable(user)

    return {
        "user_id": user.id,
        "email": user.email,
        "role": user.role
    }


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
):
    """Get current user from the bearer access token"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    current_user = await authenticate_token(credentials.credentials, db)
    request.state.current_user = current_user
    return current_user


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
):
    """Like get_current_user, but anonymous requests resolve to None"""
    if credentials is None or not credentials.credentials:
        return None
    try:
        return await get_current_user(request, credentials, db)
    except HTTPException:
        return None


def _send_verification_email(user: User, background_tasks: BackgroundTasks) -> None:
    token = auth_helpers.create_email_verification_token(user)
    subject, body = get_email_verification_email(f"{FRONTEND_URL}/verify-email?token={token}")
    background_tasks.add_task(send_email, user.email, subject, body)


@router.post("/register", response_model=ApiResponse[AuthResponse], status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserRegister,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
):
    email = user_data.email.lower()
    try:
        existing_user = await db.execute(select(User.id).where(User.email == email))
        if existing_user.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="User already exists"
            )

        new_user = User(
            email=email,
            password_hash=auth_helpers.hash_password(user_data.password),
            role=user_data.role.value
        )
        new_user.profile = Profile(
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            phone_number=user_data.phone_number
        )
        db.add(new_user)
        await db.flush()

        tokens = await auth_helpers.issue_tokens(db, new_user)
        await db.commit()

        logger.info(f"Registered user {new_user.id} as {new_user.role}")
        _send_verification_email(new_user, background_tasks)

        return success_response(
            AuthResponse(user=serialize_user(new_user), **tokens),
            message="Registration successful"
        )

    except HTTPException:
        raise
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already exists"
        )
    except Exception as e:
        await db.rollback()
        logger.error(f"Registration failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Registration failed"
        )


@router.post("/login", response_model=ApiResponse[AuthResponse])
async def login(
    user_data: UserLogin,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User)
        .options(selectinload(User.profile))
        .where(User.email == user_data.email.lower(), User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()

    if not user or not auth_helpers.verify_password(user_data.password, user.password_hash):
        logger.info(f"Failed login for {user_data.email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )
    ensure_account_usable(user)

    tokens = await auth_helpers.issue_tokens(db, user)
    await db.commit()

    return success_response(AuthResponse(user=serialize_user(user), **tokens), message="Login successful")


@router.post("/google", response_model=ApiResponse[AuthResponse])
async def google_auth(
    request_data: GoogleAuthRequest,
    db: AsyncSession = Depends(get_db)
):
    token_info = await auth_helpers.fetch_google_token_info(request_data.id_token)
    google_id = token_info["sub"]
    email = token_info["email"].lower()
    email_verified = str(token_info.get("email_verified", "")).lower() == "true"

    try:
        result = await db.execute(
            select(User).options(selectinload(User.profile)).where(User.google_id == google_id)
        )
        user = result.scalar_one_or_none()

        if not user:
            result = await db.execute(
                select(User).options(selectinload(User.profile)).where(User.email == email)
            )
            user = result.scalar_one_or_none()

            if user and user.google_id and user.google_id != google_id:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Email is linked to a different Google account"
                )

            if user:
                user.google_id = google_id
                if email_verified:
                    user.is_verified = True
                logger.info(f"Linked Google account to user {user.id}")
            else:
                role = UserRole.BUYER
                if request_data.role and request_data.role.upper() in {r.value for r in SELF_SERVICE_ROLES}:
                    role = UserRole(request_data.role.upper())

                user = User(
                    email=email,
                    google_id=google_id,
                    role=role.value,
                    is_verified=email_verified
                )
                user.profile = Profile(
                    first_name=token_info.get("given_name") or email.split("@")[0],
                    last_name=token_info.get("family_name") or "",
                    avatar_url=token_info.get("picture")
                )
                db.add(user)
                await db.flush()
                logger.info(f"Created user {user.id} from Google sign-in")

        if user.deleted_at is not None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials"
            )
        ensure_account_usable(user)

        tokens = await auth_helpers.issue_tokens(db, user)
        await db.commit()

        return success_response(AuthResponse(user=serialize_user(user), **tokens), message="Login successful")

    except HTTPException:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.error(f"Google sign-in failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Google authentication failed"
        )


@router.post("/refresh", response_model=ApiResponse[TokenResponse])
async def refresh_token(
    request_data: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db)
):
    payload = auth_helpers.verify_token(request_data.refresh_token, expected_type=REFRESH_TOKEN_TYPE)
    token_hash = auth_helpers.hash_token(request_data.refresh_token)

    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.user_id == payload["sub"],
            RefreshToken.expires_at > utcnow()
        )
    )
    stored_token = result.scalar_one_or_none()
    if not stored_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token"
        )

    user_result = await db.execute(
        select(User).where(User.id == payload["sub"], User.deleted_at.is_(None))
    )
    user = user_result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token"
        )
    ensure_account_usable(user)

    # Rotate: the presented token is single use
    await db.delete(stored_token)
    tokens = await auth_helpers.issue_tokens(db, user)
    await db.commit()

    return success_response(TokenResponse(**tokens))


@router.post("/logout", response_model=ApiResponse[dict])
async def logout(
    request_data: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db)
):
    await db.execute(
        delete(RefreshToken).where(RefreshToken.token_hash == auth_helpers.hash_token(request_data.refresh_token))
    )
    await db.commit()
    return success_response({"logged_out": True}, message="Logged out")


@router.post("/forgot-password", response_model=ApiResponse[dict])
async def forgot_password(
    request_data: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User).where(User.email == request_data.email.lower(), User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()

    if user:
        reset_token = secrets.token_urlsafe(32)
        db.add(PasswordResetToken(
            user_id=user.id,
            token_hash=auth_helpers.hash_token(reset_token),
            expires_at=utcnow() + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES)
        ))
        await db.commit()

        subject, body = get_password_reset_email(f"{FRONTEND_URL}/reset-password?token={reset_token}")
        background_tasks.add_task(send_email, user.email, subject, body)
        logger.info(f"Password reset requested for user {user.id}")

    # Same answer whether or not the account exists
    return success_response({"sent": True}, message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=ApiResponse[dict])
async def reset_password(
    request_data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(PasswordResetToken).where(
            PasswordResetToken.token_hash == auth_helpers.hash_token(request_data.token),
            PasswordResetToken.used_at.is_(None),
            PasswordResetToken.expires_at > utcnow()
        )
    )
    reset_token = result.scalar_one_or_none()
    if not reset_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired reset token"
        )

    user_result = await db.execute(select(User).where(User.id == reset_token.user_id))
    user = user_result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired reset token"
        )

    user.password_hash = auth_helpers.hash_password(request_data.password)
    reset_token.used_at = utcnow()
    await auth_helpers.revoke_all_refresh_tokens(db, user.id)
    await db.commit()

    logger.info(f"Password reset completed for user {user.id}")
    return success_response({"reset": True}, message="Password has been reset")


@router.post("/verify-email", response_model=ApiResponse[dict])
async def verify_email(
    request_data: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db)
):
    try:
        payload = auth_helpers.verify_token(request_data.token, expected_type=EMAIL_VERIFY_TOKEN_TYPE)
    except HTTPException:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired verification token"
        )

    result = await db.execute(select(User).where(User.id == payload["sub"]))
    user = result.scalar_one_or_none()
    if not user or user.email != payload.get("email"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired verification token"
        )

    user.is_verified = True
    await db.commit()
    return success_response({"verified": True}, message="Email verified")
