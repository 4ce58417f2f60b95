"""Auth schemas."""

from typing import Optional

from pydantic import BaseModel, Field

from config import USER_BIO_MAX_LENGTH


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, example="Ada")
    email: str = Field(..., min_length=3, max_length=254, example="ada@example.com")
    password: str = Field(..., min_length=6, max_length=128)
    bio: Optional[str] = Field(None, max_length=USER_BIO_MAX_LENGTH)


class LoginRequest(BaseModel):
    email: str = Field(..., description="Account email", example="ada@example.com")
    password: str = Field(..., description="Account password")
