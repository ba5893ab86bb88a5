from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from dulu.models.base import Base


class Transaction(Base):
    """Ledger entry shown in the user's history and reports."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    is_expense = Column(Boolean, nullable=False, default=True)
    category_id = Column(String(64), nullable=True)
    description = Column(String, nullable=True)
    transaction_date = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    payment_id = Column(Integer, nullable=True, unique=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


__all__ = ["Transaction"]
