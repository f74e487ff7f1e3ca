"""
Identity Provider Events: typed variants for the user lifecycle webhooks.

The provider sends ``{"type": "...", "data": {...}}``. Known types are decoded
into their own model so each processor only sees the fields it needs; anything
else becomes an ``UnknownEvent`` that is acknowledged without processing.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from fintrack.core.exceptions import MalformedEventError
from fintrack.db.models.webhook_event import WebhookEventType


class EmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    email_address: str


class PhoneNumber(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    phone_number: str


class IdentityUserData(BaseModel):
    """User object as delivered by the identity provider"""

    model_config = ConfigDict(extra="ignore")

    id: str
    email_addresses: list[EmailAddress] = []
    primary_email_address_id: Optional[str] = None
    phone_numbers: list[PhoneNumber] = []
    primary_phone_number_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    username: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    last_sign_in_at: Optional[int] = None  # epoch milliseconds

    @property
    def primary_email(self) -> str | None:
        """Primary address when flagged, else the first one; lower-cased"""
        if not self.email_addresses:
            return None
        chosen = self.email_addresses[0]
        if self.primary_email_address_id:
            for address in self.email_addresses:
                if address.id == self.primary_email_address_id:
                    chosen = address
                    break
        email = chosen.email_address.strip().lower()
        return email or None

    @property
    def primary_phone(self) -> str | None:
        if not self.phone_numbers:
            return None
        chosen = self.phone_numbers[0]
        if self.primary_phone_number_id:
            for number in self.phone_numbers:
                if number.id == self.primary_phone_number_id:
                    chosen = number
                    break
        return chosen.phone_number or None

    @property
    def last_sign_in(self) -> datetime | None:
        if not self.last_sign_in_at:
            return None
        return datetime.fromtimestamp(self.last_sign_in_at / 1000, tz=timezone.utc)


class DeletedUserData(BaseModel):
    """``user.deleted`` carries only the id (plus ``deleted: true``)"""

    model_config = ConfigDict(extra="ignore")

    id: str
    deleted: bool = True


class UserCreatedEvent(BaseModel):
    type: Literal["user.created"]
    data: IdentityUserData


class UserUpdatedEvent(BaseModel):
    type: Literal["user.updated"]
    data: IdentityUserData


class UserDeletedEvent(BaseModel):
    type: Literal["user.deleted"]
    data: DeletedUserData


class UnknownEvent(BaseModel):
    type: str
    data: dict[str, Any] = {}


IdentityEvent = Union[UserCreatedEvent, UserUpdatedEvent, UserDeletedEvent, UnknownEvent]

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    WebhookEventType.USER_CREATED.value: UserCreatedEvent,
    WebhookEventType.USER_UPDATED.value: UserUpdatedEvent,
    WebhookEventType.USER_DELETED.value: UserDeletedEvent,
}


def is_known_event_type(event_type: str) -> bool:
    return event_type in _EVENT_MODELS


def extract_subject_id(payload: dict[str, Any]) -> str:
    """Subject id from the raw envelope; empty string when the event carries none"""
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return ""


def decode_event(payload: dict[str, Any]) -> IdentityEvent:
    """
    Decode a raw ``{type, data}`` envelope into its typed variant.

    Raises:
        MalformedEventError: known type whose data does not validate (permanent).
    """
    event_type = str(payload.get("type") or "")
    model = _EVENT_MODELS.get(event_type)
    if model is None:
        data = payload.get("data")
        return UnknownEvent(type=event_type, data=data if isinstance(data, dict) else {})

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedEventError(event_type, f"{location}: {first.get('msg')}") from exc
