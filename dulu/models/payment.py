from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB

from dulu.models.base import Base

PAYMENT_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String)
    transaction_id = Column(String(64), nullable=False, unique=True)
    plan_id = Column(String, nullable=False)
    status = Column(
        Enum(*PAYMENT_STATUSES, name="payment_status"),
        nullable=False,
        default="pending",
    )
    meta = Column(
        "metadata",
        JSONB().with_variant(JSON, "sqlite"),
        nullable=False,
        default=dict,
    )
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    @property
    def is_extension(self) -> bool:
        return (self.meta or {}).get("is_extension") is True
