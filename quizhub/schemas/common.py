from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class AuthProvider(str, Enum):
    GOOGLE = "Google"
    MICROSOFT = "Microsoft"

    @property
    def env_prefix(self) -> str:
        """Environment variable prefix holding this provider's credentials."""
        return f"{self.name}_OPENID"


# Scopes requested from every OpenID provider
OPENID_SCOPES = "openid email profile"


class UserRole(str, Enum):
    STANDARD = "Standard"
    MODERATOR = "Moderator"
    ADMINISTRATOR = "Administrator"


class ErrorResponse(BaseModel):
    name: str
    message: str
    data: Optional[Any] = None
