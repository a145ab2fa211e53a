"""Pydantic schemas for the authenticated principal."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.auth.permissions import UserRole, is_admin


class Principal(BaseModel):
    """Authenticated caller, read from access token claims."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="User ID (token subject)")
    email: str | None = Field(default=None, description="User email")
    role: UserRole = Field(..., description="User role")

    @property
    def is_admin(self) -> bool:
        return is_admin(self.role)
