from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User(BaseModel):
    """Caller identity as resolved from the user directory."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role = Role.USER
    email: Optional[str] = None
    display_name: Optional[str] = None
    is_active: bool = True
    token_version: int = 0
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
