import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.db import Base, TimestampMixin, UTCDateTime


class ProfileVisibility(str, enum.Enum):
    public = "public"
    private = "private"


class Profile(TimestampMixin, Base):
    __tablename__ = "profiles"
    __table_args__ = (UniqueConstraint("user_id", name="uq_profiles_user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255))
    visibility: Mapped[ProfileVisibility] = mapped_column(
        Enum(ProfileVisibility), default=ProfileVisibility.private
    )
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    unpublished_reason: Mapped[str | None] = mapped_column(String(80))
