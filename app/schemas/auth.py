from typing import Optional
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel
from app.schemas.user import Gender, UserPrivate

PHONE_PATTERN = r"^\+?[0-9]{6,15}$"


class RegisterRequest(CamelModel):
    name: str = Field(min_length=1, max_length=50)
    phone_number: str = Field(pattern=PHONE_PATTERN)
    gender: Gender
    address: str = Field(min_length=1, max_length=255)


class LoginRequest(CamelModel):
    phone_number: str = Field(pattern=PHONE_PATTERN)


class PendingVerificationResponse(CamelModel):
    message: str
    user_id: UUID
    phone_number: str
    requires_verification: bool = True
    is_new_user: bool


class VerifyCodeRequest(CamelModel):
    user_id: UUID
    code: str = Field(pattern=r"^[0-9]{6}$")


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class VerifiedSessionResponse(TokenPairResponse):
    user: UserPrivate
    is_registration_complete: Optional[bool] = None
    is_login_complete: Optional[bool] = None


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class ValidateResponse(CamelModel):
    is_authenticated: bool
    user: UserPrivate
