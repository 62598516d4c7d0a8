import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.dependencies import get_channel
from backend.app.core.auth import AdminUser, CurrentUser, generate_api_key, mask_api_key
from backend.app.core.database import get_db
from backend.app.models.print_job import PrintJob
from backend.app.models.user import User
from backend.app.schemas.user import UserCreate, UserResponse, UserUpdate, UserWithApiKey
from backend.app.services.delivery_channel import DeliveryChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

Channel = Annotated[DeliveryChannel, Depends(get_channel)]


async def _other_active_admins(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count(User.id)).where(User.is_admin.is_(True), User.is_active.is_(True), User.id != user_id)
    )
    return result.scalar_one()


@router.get("", response_model=list[UserResponse])
@router.get("/", response_model=list[UserResponse])
async def list_users(_: AdminUser, db: AsyncSession = Depends(get_db)):
    """List all users (admin only)."""
    result = await db.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


@router.post("", response_model=UserWithApiKey, status_code=status.HTTP_201_CREATED)
@router.post("/", response_model=UserWithApiKey, status_code=status.HTTP_201_CREATED)
async def create_user(user_data: UserCreate, admin: AdminUser, db: AsyncSession = Depends(get_db)):
    """Create a user and issue its API key.

    The key is part of this response only; it cannot be retrieved later.
    """
    result = await db.execute(select(User).where(User.username == user_data.username))
    if result.scalar_one_or_none():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Username already exists")

    full_key, key_hash, key_prefix = generate_api_key()
    user = User(**user_data.model_dump(), api_key_hash=key_hash, api_key_prefix=key_prefix)
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info("Admin %s created user %s (key %s)", admin.username, user.username, mask_api_key(full_key))
    return UserWithApiKey(**UserResponse.model_validate(user).model_dump(), api_key=full_key)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: CurrentUser):
    return current_user


@router.post("/me/api-key/rotate", response_model=UserWithApiKey)
async def rotate_my_api_key(current_user: CurrentUser, db: AsyncSession = Depends(get_db)):
    """Replace the caller's API key. The old key stops working immediately."""
    user = await db.get(User, current_user.id)
    full_key, key_hash, key_prefix = generate_api_key()
    user.api_key_hash = key_hash
    user.api_key_prefix = key_prefix
    await db.commit()
    await db.refresh(user)

    logger.info("User %s rotated API key (new key %s)", user.username, mask_api_key(full_key))
    return UserWithApiKey(**UserResponse.model_validate(user).model_dump(), api_key=full_key)


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int, user_data: UserUpdate, admin: AdminUser, channel: Channel, db: AsyncSession = Depends(get_db)
):
    """Update a user (admin only). Deactivating a user closes its push connection."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    # Prevent locking everyone out
    loses_admin = user_data.is_active is False or user_data.is_admin is False
    if loses_admin and user.is_admin and user.is_active and await _other_active_admins(db, user.id) == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot deactivate the last admin user",
        )

    for field, value in user_data.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(user, field, value)
    await db.commit()
    await db.refresh(user)

    logger.info("Admin %s updated user %s", admin.username, user.username)
    if not user.is_active:
        await channel.disconnect_user(user.id, "account disabled")
    return user


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: int, admin: AdminUser, channel: Channel, db: AsyncSession = Depends(get_db)):
    """Delete a user and its print jobs (admin only)."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete your own account",
        )

    username = user.username
    await db.execute(delete(PrintJob).where(PrintJob.user_id == user_id))
    await db.delete(user)
    await db.commit()

    logger.info("Admin %s deleted user %s", admin.username, username)
    await channel.disconnect_user(user_id, "account deleted")
