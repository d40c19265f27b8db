from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional
from datetime import datetime
from models import UserRole, SELF_SERVICE_ROLES

# Request schemas
class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: UserRole = UserRole.BUYER
    phone_number: Optional[str] = Field(default=None, max_length=20)

    @field_validator("role")
    @classmethod
    def role_must_be_self_service(cls, value: UserRole) -> UserRole:
        if value not in SELF_SERVICE_ROLES:
            raise ValueError("Role must be one of FARMER, BUYER, TRANSPORTER, SUPPLIER")
        return value

class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

class GoogleAuthRequest(BaseModel):
    id_token: str = Field(min_length=1)
    role: Optional[str] = None

class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=1)

class ForgotPasswordRequest(BaseModel):
    email: EmailStr

class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=128)

class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)

# Response schemas
class ProfileResponse(BaseModel):
    id: str
    user_id: str
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime
    updated_at: datetime

class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    is_active: bool
    is_suspended: bool
    is_verified: bool
    has_google: bool = False
    created_at: datetime
    profile: Optional[ProfileResponse] = None

class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
