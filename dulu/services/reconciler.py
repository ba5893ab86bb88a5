"""Apply PawaPay deposit statuses to local payment and subscription state.

Both the provider callback and client polling funnel into
:func:`apply_provider_status`. Statuses only move forward
(``pending -> processing -> completed | failed``) and the move into a
terminal state is claimed with a conditional ``UPDATE``, so when a callback
and a poll race on the same deposit exactly one of them extends the
subscription and writes the ledger entry.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dulu import db as db_module
from dulu.config import Settings
from dulu.errors import ReconciliationError
from dulu.metrics import (
    payment_completed_total,
    payment_fail_total,
    reconcile_noop_total,
)
from dulu.models import Event, Payment, Transaction, User
from dulu.services.pawapay import DepositStatus, PawaPayClient
from dulu.services.subscription import compute_new_end_date

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "ACCEPTED": "processing",
    "COMPLETED": "completed",
    "FAILED": "failed",
    "REJECTED": "failed",
}
STATUS_RANK = {"pending": 0, "processing": 1, "completed": 2, "failed": 2}


@dataclass
class ReconcileResult:
    applied: bool
    previous_status: str
    status: str
    subscription_updated: bool = False
    subscription_end_date: date | None = None


def map_provider_status(provider_status: str | None) -> str | None:
    """Translate a provider status; ``None`` means leave the payment alone."""
    if not provider_status:
        return None
    return STATUS_MAP.get(provider_status.strip().upper())


def _predecessors(status: str) -> list[str]:
    rank = STATUS_RANK[status]
    return [name for name, value in STATUS_RANK.items() if value < rank]


def record_subscription_transaction(
    db: Session, payment: Payment, now: datetime, cfg: Settings
) -> bool:
    """Mirror the payment as an expense; failures never block the caller."""
    description = f"{cfg.subscription_label} {payment.plan_id}"
    if payment.is_extension:
        description += " (Extension)"
    try:
        with db.begin_nested():
            db.add(
                Transaction(
                    user_id=payment.user_id,
                    amount=payment.amount,
                    is_expense=True,
                    category_id=cfg.subscription_category_id,
                    description=description,
                    transaction_date=now,
                    payment_id=payment.id,
                )
            )
    except SQLAlchemyError as exc:
        logger.error(
            "Failed to record payment as transaction: %s",
            exc,
            extra={"payment_id": payment.id},
        )
        return False
    return True


def _extend_subscription(
    db: Session, payment: Payment, now: datetime, cfg: Settings
) -> date:
    user = db.get(User, payment.user_id, with_for_update=True)
    if user is None:
        logger.warning("user %s missing, creating subscription row", payment.user_id)
        user = User(id=payment.user_id, subscription_level="free")
        db.add(user)
    end = compute_new_end_date(
        user.subscription_end_date,
        payment.is_extension,
        now,
        floor_to_now=cfg.extension_floor_to_now,
    )
    user.subscription_level = "pro"
    user.subscription_end_date = end.date()
    user.updated_at = now
    payment.subscription_start_date = now
    payment.subscription_end_date = end
    db.flush()
    return end.date()


def apply_provider_status(
    db: Session,
    payment: Payment,
    provider_status: str | None,
    *,
    source: str,
    audit: dict[str, Any] | None = None,
    now: datetime | None = None,
    cfg: Settings | None = None,
) -> ReconcileResult:
    cfg = cfg or Settings()
    now = now or datetime.now(timezone.utc)
    previous = payment.status
    new_status = map_provider_status(provider_status)

    if new_status is None or STATUS_RANK[new_status] <= STATUS_RANK.get(previous, 0):
        reconcile_noop_total.labels(source).inc()
        logger.info(
            "status %s ignored for payment %s in %s",
            provider_status,
            payment.id,
            previous,
        )
        return ReconcileResult(applied=False, previous_status=previous, status=previous)

    meta = dict(payment.meta or {})
    if audit:
        meta.update(audit)

    subscription_end: date | None = None
    try:
        claimed = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status.in_(_predecessors(new_status)),
            )
            .values({Payment.status: new_status, Payment.meta: meta, Payment.updated_at: now})
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            db.rollback()
            db.refresh(payment)
            reconcile_noop_total.labels(source).inc()
            logger.info(
                "payment %s already moved to %s, skipping %s",
                payment.id,
                payment.status,
                new_status,
            )
            return ReconcileResult(
                applied=False, previous_status=previous, status=payment.status
            )

        db.refresh(payment)
        logger.info(
            "Updating payment status from %s to %s",
            previous,
            new_status,
            extra={"payment_id": payment.id, "source": source},
        )
        if new_status == "completed":
            subscription_end = _extend_subscription(db, payment, now, cfg)
            record_subscription_transaction(db, payment, now, cfg)
            db.add(Event(user_id=payment.user_id, event="payment_success"))
            db.add(Event(user_id=payment.user_id, event="pro_activated"))
        elif new_status == "failed":
            db.add(Event(user_id=payment.user_id, event="payment_fail"))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to apply status %s to payment %s", new_status, payment.id)
        raise ReconciliationError(
            f"Failed to update payment record: {exc}",
            deposit_id=payment.transaction_id,
        ) from exc

    if new_status == "completed":
        payment_completed_total.labels(source).inc()
    elif new_status == "failed":
        payment_fail_total.inc()
    return ReconcileResult(
        applied=True,
        previous_status=previous,
        status=new_status,
        subscription_updated=subscription_end is not None,
        subscription_end_date=subscription_end,
    )


def find_payment(db: Session, deposit_id: str) -> Payment | None:
    return db.query(Payment).filter_by(transaction_id=deposit_id).first()


def reconcile_deposit_status(
    deposit_id: str,
    provider_status: str | None,
    *,
    source: str,
    audit: dict[str, Any] | None = None,
    cfg: Settings | None = None,
    now: datetime | None = None,
) -> tuple[Payment | None, ReconcileResult | None]:
    """Look up a payment by depositId and apply the status in a new session."""
    with db_module.SessionLocal() as db:
        payment = find_payment(db, deposit_id)
        if payment is None:
            return None, None
        result = apply_provider_status(
            db,
            payment,
            provider_status,
            source=source,
            audit=audit,
            now=now,
            cfg=cfg,
        )
        return payment, result


async def sync_deposit(
    client: PawaPayClient,
    deposit_id: str,
    *,
    cfg: Settings | None = None,
) -> tuple[DepositStatus, Payment | None, ReconcileResult | None]:
    """Re-query the provider and apply its answer.

    A :class:`~dulu.errors.ProviderError` from the lookup propagates before
    anything is written, so an unreachable provider never fails a payment.
    """
    deposit = await client.get_deposit(deposit_id)
    now = datetime.now(timezone.utc)
    audit = {
        "latest_pawapay_status": deposit.audit_payload(),
        "status_updated_at": now.isoformat(),
    }
    payment, result = await asyncio.to_thread(
        reconcile_deposit_status,
        deposit_id,
        deposit.status,
        source="poll",
        audit=audit,
        cfg=cfg,
        now=now,
    )
    return deposit, payment, result
