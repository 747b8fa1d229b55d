# SQLModel definitions - imported here to ensure metadata is populated for Alembic.
from .base import IDMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .user import User  # noqa: F401
from .membership import OrganizationUser  # noqa: F401
from .user_session import UserSession  # noqa: F401
