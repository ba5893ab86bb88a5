from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from dulu.config import Settings
from dulu.db import SessionLocal
from dulu.errors import ReconciliationError
from dulu.models import Event, Transaction
from dulu.services import reconciler
from dulu.services.reconciler import (
    STATUS_RANK,
    apply_provider_status,
    find_payment,
    map_provider_status,
    reconcile_deposit_status,
)
from tests.utils.factories import (
    load_payment,
    load_user,
    make_payment,
    make_user,
    user_transactions,
)

NOW = datetime(2025, 1, 5, 12, 0, tzinfo=timezone.utc)
settings = Settings()


@pytest.mark.parametrize(
    "provider_status, expected",
    [
        ("ACCEPTED", "processing"),
        ("COMPLETED", "completed"),
        ("completed", "completed"),
        ("FAILED", "failed"),
        ("REJECTED", "failed"),
        ("SUBMITTED", None),
        ("ENQUEUED", None),
        ("", None),
        (None, None),
    ],
)
def test_map_provider_status(provider_status, expected):
    assert map_provider_status(provider_status) == expected


@pytest.mark.parametrize("provider_status", ["SUBMITTED", "IN_RECONCILIATION", "ACCEPTED", "FAILED"])
def test_completed_never_regresses(provider_status):
    user_id = make_user()
    deposit_id = make_payment(user_id, status="completed")
    _, result = reconcile_deposit_status(deposit_id, provider_status, source="webhook", now=NOW)
    assert not result.applied
    assert load_payment(deposit_id).status == "completed"


def test_unknown_status_leaves_pending_alone():
    user_id = make_user()
    deposit_id = make_payment(user_id, status="pending")
    _, result = reconcile_deposit_status(deposit_id, "SUBMITTED", source="poll", now=NOW)
    assert result.applied is False
    assert result.status == "pending"
    assert load_payment(deposit_id).status == "pending"


def test_accepted_moves_pending_to_processing_only_once():
    user_id = make_user()
    deposit_id = make_payment(user_id, status="pending")
    _, first = reconcile_deposit_status(deposit_id, "ACCEPTED", source="poll", now=NOW)
    _, second = reconcile_deposit_status(deposit_id, "ACCEPTED", source="poll", now=NOW)
    assert first.applied and first.status == "processing"
    assert not second.applied
    assert load_payment(deposit_id).status == "processing"


def test_completed_activates_pro_for_one_month():
    user_id = make_user()
    deposit_id = make_payment(user_id)
    payment, result = reconcile_deposit_status(
        deposit_id,
        "COMPLETED",
        source="webhook",
        audit={"webhook_received_at": NOW.isoformat()},
        now=NOW,
    )
    assert result.applied
    assert result.previous_status == "processing"
    assert result.subscription_updated
    assert result.subscription_end_date == date(2025, 2, 5)

    user = load_user(user_id)
    assert user.subscription_level == "pro"
    assert user.subscription_end_date == date(2025, 2, 5)

    stored = load_payment(deposit_id)
    assert stored.status == "completed"
    assert stored.meta["webhook_received_at"] == NOW.isoformat()
    assert stored.meta["is_extension"] is False
    assert stored.subscription_end_date is not None

    entries = user_transactions(user_id)
    assert len(entries) == 1
    assert entries[0].payment_id == payment.id
    assert entries[0].is_expense is True
    assert entries[0].category_id == settings.subscription_category_id
    assert entries[0].amount == Decimal("2000")
    assert entries[0].description == "Abonnement pro"

    with SessionLocal() as db:
        events = {e.event for e in db.query(Event).filter_by(user_id=user_id)}
    assert {"payment_success", "pro_activated"} <= events


def test_double_completion_extends_once():
    user_id = make_user(subscription_end_date=date(2025, 1, 10), level="pro")
    deposit_id = make_payment(user_id, is_extension=True)
    _, first = reconcile_deposit_status(deposit_id, "COMPLETED", source="webhook", now=NOW)
    _, second = reconcile_deposit_status(deposit_id, "COMPLETED", source="poll", now=NOW)

    assert first.applied
    assert not second.applied
    assert load_user(user_id).subscription_end_date == date(2025, 2, 10)
    entries = user_transactions(user_id)
    assert len(entries) == 1
    assert entries[0].description == "Abonnement pro (Extension)"


def test_racing_sessions_extend_once():
    user_id = make_user(subscription_end_date=date(2025, 1, 10), level="pro")
    deposit_id = make_payment(user_id, is_extension=True)

    with SessionLocal() as first_db, SessionLocal() as second_db:
        first = find_payment(first_db, deposit_id)
        second = find_payment(second_db, deposit_id)
        assert first.status == second.status == "processing"

        won = apply_provider_status(first_db, first, "COMPLETED", source="webhook", now=NOW)
        lost = apply_provider_status(second_db, second, "COMPLETED", source="poll", now=NOW)

    assert won.applied
    assert not lost.applied
    assert lost.status == "completed"
    assert load_user(user_id).subscription_end_date == date(2025, 2, 10)
    assert len(user_transactions(user_id)) == 1


def test_transaction_insert_failure_is_not_fatal():
    user_id = make_user()
    deposit_id = make_payment(user_id)
    payment_id = load_payment(deposit_id).id
    with SessionLocal() as db:
        # the unique payment_id slot is already taken
        db.add(Transaction(user_id=user_id, amount=1, payment_id=payment_id))
        db.commit()

    _, result = reconcile_deposit_status(deposit_id, "COMPLETED", source="webhook", now=NOW)

    assert result.applied
    assert result.subscription_updated
    assert load_payment(deposit_id).status == "completed"
    assert load_user(user_id).subscription_level == "pro"
    assert len(user_transactions(user_id)) == 1


def test_rejected_marks_payment_failed_without_subscription():
    user_id = make_user()
    deposit_id = make_payment(user_id)
    _, result = reconcile_deposit_status(deposit_id, "REJECTED", source="webhook", now=NOW)
    assert result.applied
    assert result.status == "failed"
    assert not result.subscription_updated
    assert load_payment(deposit_id).status == "failed"
    assert load_user(user_id).subscription_level == "free"
    assert user_transactions(user_id) == []

    _, late = reconcile_deposit_status(deposit_id, "COMPLETED", source="poll", now=NOW)
    assert not late.applied
    assert load_payment(deposit_id).status == "failed"


def test_missing_user_row_is_created_on_completion():
    user_id = f"ghost-{uuid4()}"
    deposit_id = make_payment(user_id)
    _, result = reconcile_deposit_status(deposit_id, "COMPLETED", source="webhook", now=NOW)
    assert result.subscription_updated
    user = load_user(user_id)
    assert user.subscription_level == "pro"
    assert user.subscription_end_date == date(2025, 2, 5)


def test_database_error_rolls_back_and_raises(monkeypatch):
    user_id = make_user()
    deposit_id = make_payment(user_id)

    def _broken(*args, **kwargs):
        raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

    monkeypatch.setattr(reconciler, "_extend_subscription", _broken)
    with pytest.raises(ReconciliationError) as excinfo:
        reconcile_deposit_status(deposit_id, "COMPLETED", source="webhook", now=NOW)
    assert excinfo.value.deposit_id == deposit_id
    assert load_payment(deposit_id).status == "processing"


def test_unknown_deposit_returns_none():
    assert reconcile_deposit_status("no-such-deposit", "COMPLETED", source="webhook") == (None, None)


def test_status_rank_orders_terminal_states_last():
    assert STATUS_RANK["pending"] < STATUS_RANK["processing"] < STATUS_RANK["completed"]
    assert STATUS_RANK["completed"] == STATUS_RANK["failed"]
