import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from harbor_billing.db import Base, TimestampMixin


class UserType(str, enum.Enum):
    individual = "individual"
    dealer = "dealer"
    premium_individual = "premium_individual"
    premium_dealer = "premium_dealer"


class User(TimestampMixin, Base):
    """Marketplace user as seen by billing.

    The platform owns the record; billing only flips the membership fields
    when a subscription starts, renews, lapses or ends.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255))
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType), default=UserType.individual, nullable=False
    )
    premium_active: Mapped[bool] = mapped_column(Boolean, default=False)
    premium_plan: Mapped[str | None] = mapped_column(String(80))
    premium_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    membership_details: Mapped[dict | None] = mapped_column(JSON)

    @property
    def is_dealer(self) -> bool:
        return self.user_type in (UserType.dealer, UserType.premium_dealer)
