from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete
from config import (
    JWT_SECRET_KEY,
    JWT_REFRESH_SECRET_KEY,
    JWT_ALGORITHM,
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES,
    JWT_REFRESH_TOKEN_EXPIRE_DAYS,
    EMAIL_VERIFICATION_EXPIRE_HOURS,
    GOOGLE_CLIENT_ID,
    GOOGLE_TOKENINFO_URL,
)
from models import User, RefreshToken, utcnow
from datetime import timedelta
from typing import Dict, Any
import hashlib
import bcrypt
import httpx
import jwt
import uuid
import logging

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
EMAIL_VERIFY_TOKEN_TYPE = "email_verify"


class AuthHelpers:
    """Helper functions for authentication operations"""

    # ---- passwords ----

    def hash_password(self, password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    def verify_password(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False

    @staticmethod
    def hash_token(token: str) -> str:
        """Tokens are persisted as SHA-256 digests, never in clear"""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    # ---- JWT ----

    def create_access_token(self, user: User) -> str:
        now = utcnow()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(minutes=JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        }
        return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)

    def create_refresh_token(self, user: User) -> str:
        now = utcnow()
        payload = {
            "sub": str(user.id),
            "type": REFRESH_TOKEN_TYPE,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(days=JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        }
        return jwt.encode(payload, JWT_REFRESH_SECRET_KEY, algorithm=JWT_ALGORITHM)

    def create_email_verification_token(self, user: User) -> str:
        now = utcnow()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "type": EMAIL_VERIFY_TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(hours=EMAIL_VERIFICATION_EXPIRE_HOURS),
        }
        return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> Dict[str, Any]:
        """
        Decode and validate a token we issued.
        Returns the payload, with `sub` converted to a UUID.
        """
        secret = JWT_REFRESH_SECRET_KEY if expected_type == REFRESH_TOKEN_TYPE else JWT_SECRET_KEY
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "sub", "type"]}
            )
        except jwt.ExpiredSignatureError:
            logger.info(f"Expired {expected_type} token presented")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token expired"
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid {expected_type} token: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token"
            )

        if payload.get("type") != expected_type:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token type"
            )

        try:
            payload["sub"] = uuid.UUID(payload["sub"])
        except (ValueError, TypeError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: malformed subject"
            )
        return payload

    async def issue_tokens(self, db: AsyncSession, user: User) -> Dict[str, str]:
        """
        Create an access/refresh pair and persist the refresh token.
        The caller commits.
        """
        access_token = self.create_access_token(user)
        refresh_token = self.create_refresh_token(user)
        db.add(RefreshToken(
            user_id=user.id,
            token_hash=self.hash_token(refresh_token),
            expires_at=utcnow() + timedelta(days=JWT_REFRESH_TOKEN_EXPIRE_DAYS)
        ))
        return {"access_token": access_token, "refresh_token": refresh_token}

    async def revoke_all_refresh_tokens(self, db: AsyncSession, user_id: uuid.UUID) -> None:
        await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))

    # ---- Google ----

    async def fetch_google_token_info(self, id_token: str) -> Dict[str, Any]:
        """
        Validate a Google ID token with the tokeninfo endpoint
        """
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        except httpx.HTTPError as e:
            logger.error(f"Google token verification request failed: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Google token verification failed"
            )

        if response.status_code != 200:
            logger.warning(f"Google rejected ID token: {response.status_code}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Google token"
            )

        token_info = response.json()
        if GOOGLE_CLIENT_ID and token_info.get("aud") != GOOGLE_CLIENT_ID:
            logger.warning("Google token audience mismatch")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Google token"
            )
        if not token_info.get("sub") or not token_info.get("email"):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Google token"
            )
        return token_info


auth_helpers = AuthHelpers()
