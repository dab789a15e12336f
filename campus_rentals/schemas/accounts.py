from typing import Optional

from pydantic import BaseModel, ConfigDict


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str
    password: str
    email: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str
    password: str


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    venmo_handle: Optional[str] = None
    cashapp_tag: Optional[str] = None


class PasswordChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newPassword: str
