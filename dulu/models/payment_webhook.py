from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from dulu.models.base import Base


class PaymentWebhook(Base):
    """Raw provider callback kept for audit."""

    __tablename__ = "payment_webhooks"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, nullable=True)
    deposit_id = Column(String(64), nullable=False, index=True)
    status = Column(String, nullable=False)
    payload = Column(JSONB().with_variant(JSON, "sqlite"), nullable=False, default=dict)
    processed_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
