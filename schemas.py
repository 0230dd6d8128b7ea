import datetime as dt
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Role, TransactionType, UserStatus

MIN_PASSWORD_LENGTH = 6


class Identity(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    email_confirmed_at: Optional[datetime] = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    email: str
    role: Role
    status: UserStatus = UserStatus.active
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    type: TransactionType


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    description: str
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    date: dt.date
    category_id: Optional[str] = None
    user_id: str
    employee_name: Optional[str] = None
    created_at: Optional[datetime] = None


class SignUpResult(BaseModel):
    requires_confirmation: bool
    confirmation_token: Optional[str] = Field(default=None, exclude=True)


def _check_password_pair(password: str, confirm: Optional[str]) -> None:
    if confirm is not None and password != confirm:
        raise ValueError("Password confirmation does not match")


class SignInIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class SignUpIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    confirm_password: str
    name: str = Field(..., min_length=1, max_length=120)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("Invalid email address")
        return value

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name cannot be empty")
        return value

    @model_validator(mode="after")
    def _passwords_match(self) -> "SignUpIn":
        _check_password_pair(self.password, self.confirm_password)
        return self


class UserCreateIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    name: str = Field(..., min_length=1, max_length=120)
    role: Role = Role.employee

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("Invalid email address")
        return value


class UserUpdateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    role: Role


class ProfileUpdateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self) -> "PasswordChangeIn":
        _check_password_pair(self.new_password, self.confirm_password)
        return self


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: str
    description: str = Field(..., min_length=1, max_length=200)


class ReportOptions(BaseModel):
    period: Literal["weekly", "monthly", "all"] = "monthly"
    include_cents: bool = True
    months: int = Field(default=6, ge=1, le=24)
    notes: Optional[str] = Field(default=None, max_length=500)
