from datetime import datetime

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    name: str = ""
    email: str = ""
    is_admin: bool = False


class UserResponse(BaseModel):
    id: int
    username: str
    name: str
    email: str
    is_admin: bool
    is_active: bool
    api_key_prefix: str
    created_at: datetime

    class Config:
        from_attributes = True


class UserWithApiKey(UserResponse):
    """Returned only when a key is issued; the key is not retrievable afterwards."""

    api_key: str


class UserUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    is_admin: bool | None = None
    is_active: bool | None = None
