"""User model."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from quizhub.schemas.common import UserRole

from .base import TimestampMixin


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True, nullable=False)  # always lowercase
    email_verified_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
    username: str = Field(unique=True, index=True, nullable=False)
    password_hash: Optional[str] = Field(default=None)  # bcrypt hash
    role: UserRole = Field(default=UserRole.STANDARD, nullable=False)
