"""Refresh token storage, one active token per user."""

from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class UserRefreshToken(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "user_refresh_tokens"

    refresh_token: str = Field(primary_key=True)
    user_id: int = Field(
        foreign_key="users.id", unique=True, nullable=False, ondelete="CASCADE"
    )
