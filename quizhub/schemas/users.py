"""User schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .common import UserRole


class UserResponse(BaseModel):
    """Account details visible to the account owner."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    email_verified_at: Optional[datetime] = None
    username: str
    role: UserRole
    created_at: datetime
    updated_at: datetime
