"""
User Sync Service - event processors that mirror identity-provider users locally.

Each processor is idempotent: running it again with the same payload leaves
the local store in the same state, so at-least-once delivery and scheduler
retries are safe. Processors commit their own work and return True; any
exception they raise is handed to the retry policy.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.exceptions import MissingEmailError, UserConflictError
from fintrack.core.logging import get_logger
from fintrack.db.models.user import DEFAULT_FIRST_NAME, User
from fintrack.domain.identity_events import DeletedUserData, IdentityUserData

logger = get_logger(__name__)


class UserSyncService:
    """Creates, updates and deletes local users from identity events"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, subject_id: str) -> User | None:
        result = await self.db.execute(
            select(User).where(User.subject_id == subject_id)
        )
        return result.scalar_one_or_none()

    async def _find_existing(self, subject_id: str, email: str) -> User | None:
        result = await self.db.execute(
            select(User)
            .where(or_(User.subject_id == subject_id, User.email == email))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _insert(self, user: User) -> bool:
        """Insert inside a savepoint; False when a concurrent writer got there first"""
        try:
            async with self.db.begin_nested():
                self.db.add(user)
            await self.db.commit()
            return True
        except IntegrityError:
            logger.info(
                "User insert lost a unique-key race",
                extra_data={"subject_id": user.subject_id},
            )
            return False

    async def process_user_creation(self, data: IdentityUserData) -> bool:
        """
        Handle ``user.created``.

        An existing user on either key means the event was already applied
        (redelivery, or the client's fallback ran first) and is a no-op.

        Raises:
            MissingEmailError: payload has no email address (permanent).
        """
        email = data.primary_email
        if not email:
            logger.warning(
                "No email found for user",
                extra_data={"subject_id": data.id},
            )
            raise MissingEmailError(data.id)

        existing = await self._find_existing(data.id, email)
        if existing is not None:
            logger.info(
                "User already synced",
                extra_data={"subject_id": data.id, "user_id": existing.id},
            )
            return True

        user = User(
            subject_id=data.id,
            email=email,
            first_name=data.first_name or DEFAULT_FIRST_NAME,
            last_name=data.last_name or "",
            phone_number=data.primary_phone,
            avatar=data.image_url,
            username=data.username,
            last_sign_in_at=data.last_sign_in,
            is_onboarded=False,
        )
        if await self._insert(user):
            logger.info("User created", extra_data={"subject_id": data.id})
            return True

        # a concurrent creation for the same subject or email counts as applied
        if await self._find_existing(data.id, email) is None:
            raise UserConflictError(data.id)
        return True

    @staticmethod
    def _update_fields(data: IdentityUserData) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "first_name": data.first_name or DEFAULT_FIRST_NAME,
            "last_name": data.last_name or "",
            "avatar": data.image_url,
            "username": data.username,
        }
        if data.primary_email:
            fields["email"] = data.primary_email
        if data.last_sign_in is not None:
            fields["last_sign_in_at"] = data.last_sign_in
        if data.primary_phone:
            fields["phone_number"] = data.primary_phone
        return fields

    async def process_user_update(self, data: IdentityUserData) -> bool:
        """
        Handle ``user.updated`` as an upsert keyed by subject id.

        An update that arrives before its creation event creates the user,
        which needs an email like any other creation.

        Raises:
            MissingEmailError: no local user and no email to create one with.
        """
        fields = self._update_fields(data)

        user = await self.get_user(data.id)
        if user is None:
            if "email" not in fields:
                raise MissingEmailError(data.id)
            created = await self._insert(User(subject_id=data.id, is_onboarded=False, **fields))
            if created:
                logger.info(
                    "User created from update event",
                    extra_data={"subject_id": data.id},
                )
                return True
            user = await self.get_user(data.id)
            if user is None:
                raise UserConflictError(data.id)

        for name, value in fields.items():
            setattr(user, name, value)
        await self.db.commit()

        logger.info("User updated", extra_data={"subject_id": data.id})
        return True

    async def process_user_deletion(self, data: DeletedUserData) -> bool:
        """Handle ``user.deleted``; deleting a missing user is not an error"""
        result = await self.db.execute(
            delete(User).where(User.subject_id == data.id)
        )
        await self.db.commit()

        logger.info(
            "User deleted",
            extra_data={"subject_id": data.id, "deleted": bool(result.rowcount)},
        )
        return True

    async def ensure_user(
        self,
        subject_id: str,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
        phone_number: str | None = None,
        avatar: str | None = None,
        username: str | None = None,
    ) -> tuple[User, bool]:
        """
        Create the user directly when the webhook path has not delivered yet.

        Returns ``(user, created)``; an existing user on either key is
        returned unchanged.
        """
        email = email.strip().lower()
        existing = await self._find_existing(subject_id, email)
        if existing is not None:
            return existing, False

        user = User(
            subject_id=subject_id,
            email=email,
            first_name=first_name or DEFAULT_FIRST_NAME,
            last_name=last_name or "",
            phone_number=phone_number,
            avatar=avatar,
            username=username,
            is_onboarded=False,
        )
        if await self._insert(user):
            logger.info("Fallback user created", extra_data={"subject_id": subject_id})
            return user, True

        existing = await self._find_existing(subject_id, email)
        if existing is None:
            raise UserConflictError(subject_id)
        return existing, False
