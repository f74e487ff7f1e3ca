"""
User API Routes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.api.schemas import UserResponse
from fintrack.core.exceptions import UserNotFoundError
from fintrack.db.database import get_db
from fintrack.domain.services.user_sync_service import UserSyncService

router = APIRouter()


@router.get(
    "/{subject_id}",
    response_model=UserResponse,
    summary="Local user by identity-provider subject id",
    description="Clients poll this after sign-up; 404 until the user has been synced.",
    responses={404: {"description": "User not synced yet"}},
)
async def get_user_by_subject(
    subject_id: str,
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await UserSyncService(db).get_user(subject_id)
    if user is None:
        raise UserNotFoundError(subject_id)
    return UserResponse.model_validate(user)
