from typing import Optional

from pydantic import BaseModel, ConfigDict


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: str
    email: str
    password: str
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: str
    email: str
    phone: Optional[str] = None


class PasswordChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    currentPassword: str
    newPassword: str


class ResetCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str


class PasswordReset(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    code: str
    newPassword: str


class AdminUserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: str
    email: str
    password: str
    role: Optional[str] = None
    phone: Optional[str] = None


class AdminUserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None


class RoleChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: str
