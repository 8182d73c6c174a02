"""Request bodies for the JSON API. Field names follow the web client's camelCase."""
from typing import Optional

from pydantic import BaseModel, EmailStr


class OtpSendIn(BaseModel):
    email: EmailStr


class OtpVerifyIn(BaseModel):
    email: EmailStr
    code: str


class AdminLoginIn(BaseModel):
    password: str


class RefreshIn(BaseModel):
    refreshToken: str


class PresignIn(BaseModel):
    contentType: Optional[str] = None


class ConfirmIn(BaseModel):
    fileUrl: str


class ParseDealIn(BaseModel):
    fileId: str
    zip: str


class DealRefIn(BaseModel):
    dealId: str
