from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, Enum, String

from dulu.models.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    subscription_level = Column(
        Enum("free", "pro", name="subscription_level"),
        nullable=False,
        default="free",
    )
    subscription_end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


__all__ = ["User"]
