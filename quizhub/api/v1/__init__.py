"""
API v1 Router

Authentication lives outside the versioned prefix, under /auth.
"""

from fastapi import APIRouter
from . import users

router = APIRouter()

router.include_router(users.router, prefix="/user", tags=["Users"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/user/self",
        ],
    }
