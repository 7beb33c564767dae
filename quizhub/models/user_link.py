"""Record of a user having authenticated through an OpenID provider."""

from sqlmodel import Field, SQLModel

from quizhub.schemas.common import AuthProvider

from .base import CreatedAtMixin


class UserLink(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "user_links"

    user_id: int = Field(
        foreign_key="users.id", primary_key=True, ondelete="CASCADE"
    )
    provider: AuthProvider = Field(primary_key=True)
