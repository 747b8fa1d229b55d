"""Organization membership: one role per user per organization."""

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import IDMixin, TimestampMixin


class OrganizationUser(IDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organization_users"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "organization_id", name="uq_organization_users_user_org"),
    )

    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    organization_id: str = Field(foreign_key="organizations.id", nullable=False, index=True)
    role: str = Field(nullable=False, default="member")  # super_admin | admin | member | viewer
