"""Active-organization pointer. One row per user, written by upsert."""

from datetime import datetime

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import utcnow


class UserSession(SQLModel, table=True):
    __tablename__ = "user_sessions"

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", nullable=False, index=True)
    updated_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
