# SQLModel definitions, imported here to ensure metadata is populated.
from .base import CreatedAtMixin, TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .user_link import UserLink  # noqa: F401
from .refresh_token import UserRefreshToken  # noqa: F401
