"""
Shared API schemas - camelCase on the wire, snake_case in Python.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from fintrack.domain.services.webhook_log_service import ensure_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class UserResponse(CamelModel):
    """Local user record"""
    id: int
    subject_id: str
    email: str
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    avatar: Optional[str] = None
    username: Optional[str] = None
    is_onboarded: bool
    theme: str
    currency: str
    language: str
    last_sign_in_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("last_sign_in_at", "created_at", "updated_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)
