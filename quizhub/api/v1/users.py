"""
User endpoints.

GET /api/v1/user/self  The authenticated user's account details
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from quizhub.core.auth import get_current_user
from quizhub.models.user import User
from quizhub.schemas.users import UserResponse

router = APIRouter()


@router.get("/self", response_model=UserResponse)
async def get_active_user(user: User = Depends(get_current_user)):
    """Details of the user the session token belongs to."""
    return UserResponse.model_validate(user)
