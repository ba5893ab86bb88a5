from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from dulu import db as db_module
from dulu.config import Settings
from dulu.errors import ProviderError, ValidationError
from dulu.metrics import payment_initiated_total
from dulu.models import Event, Payment
from dulu.services.pawapay import PROVIDER_STATUSES, DepositStatus, PawaPayClient
from dulu.services.phone import (
    CORRESPONDENTS,
    ORANGE_CMR,
    detect_correspondent,
    format_phone,
    is_valid_phone,
    resolve_correspondent,
    to_msisdn,
)
from dulu.services.reconciler import apply_provider_status, map_provider_status

logger = logging.getLogger(__name__)

STATEMENT_MAX_LEN = 22
_STATEMENT_UNSAFE = re.compile(r"[^a-zA-Z0-9 ]")


@dataclass
class DepositResult:
    payment_id: int
    deposit_id: str
    status: str
    message: str
    created: str | None
    is_extension: bool


def parse_amount(raw: object) -> Decimal:
    if isinstance(raw, bool) or raw is None:
        raise ValidationError("Amount must be a positive number")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError("Amount must be a positive number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    return amount


def statement_description(
    plan_id: str, description: str | None, is_extension: bool
) -> str:
    """PawaPay accepts at most 22 alphanumeric characters and spaces."""
    if is_extension:
        text = f"DULU {plan_id} Extension"
    elif description:
        text = description
    else:
        text = f"DULU {plan_id}"
    return _STATEMENT_UNSAFE.sub(" ", text)[:STATEMENT_MAX_LEN]


async def _choose_correspondent(
    client: PawaPayClient, phone: str, correspondent: str | None
) -> str:
    if correspondent:
        return resolve_correspondent(phone, correspondent)
    detected = detect_correspondent(phone)
    if detected:
        return detected
    try:
        predicted = await client.predict_correspondent(to_msisdn(phone))
    except ProviderError as exc:
        logger.warning("correspondent prediction failed for %s: %s", phone, exc.message)
        return ORANGE_CMR
    if predicted not in CORRESPONDENTS:
        logger.warning("unsupported predicted correspondent %s", predicted)
        return ORANGE_CMR
    return predicted


def _create_payment_row(
    *,
    user_id: str,
    amount: Decimal,
    currency: str,
    deposit_id: str,
    plan_id: str,
    phone: str,
    correspondent: str,
    description: str,
    is_extension: bool,
) -> int:
    with db_module.SessionLocal() as db:
        payment = Payment(
            user_id=user_id,
            amount=amount,
            currency=currency,
            status="pending",
            payment_method=CORRESPONDENTS[correspondent],
            transaction_id=deposit_id,
            plan_id=plan_id,
            meta={
                "phone_number": phone,
                "correspondent": correspondent,
                "description": description,
                "is_extension": is_extension,
                "pawapay_request": {
                    "depositId": deposit_id,
                    "amount": str(amount),
                    "correspondent": correspondent,
                    "payer_phone": phone,
                },
            },
        )
        db.add(payment)
        db.add(Event(user_id=user_id, event="payment_created"))
        db.commit()
        return payment.id


def _record_provider_error(payment_id: int, error: str, now: datetime) -> None:
    with db_module.SessionLocal() as db:
        payment = db.get(Payment, payment_id)
        if payment is None:
            return
        payment.meta = {
            **(payment.meta or {}),
            "error": error,
            "error_at": now.isoformat(),
        }
        payment.updated_at = now
        db.commit()


def _store_initial_response(
    payment_id: int, deposit: DepositStatus, now: datetime, cfg: Settings
) -> None:
    audit = {
        "pawapay_response": deposit.audit_payload(),
        "updated_at": now.isoformat(),
    }
    with db_module.SessionLocal() as db:
        payment = db.get(Payment, payment_id)
        if payment is None:
            return
        if map_provider_status(deposit.status) in {"processing", "failed"}:
            apply_provider_status(
                db, payment, deposit.status, source="initiate", audit=audit, now=now, cfg=cfg
            )
            return
        payment.meta = {**(payment.meta or {}), **audit}
        payment.updated_at = now
        db.commit()


async def initiate_deposit(
    client: PawaPayClient,
    *,
    user_id: str,
    amount: object,
    phone_number: str,
    plan_id: str,
    correspondent: str | None = None,
    description: str | None = None,
    is_extension: bool = False,
    cfg: Settings | None = None,
) -> DepositResult:
    """Validate input, persist a pending payment and ask PawaPay for a deposit.

    The ``payments`` row is written before the provider call so every
    attempt stays auditable. Only an ``ACCEPTED`` answer counts as success;
    an explicit rejection fails the row, while transport errors and other
    answers leave it ``pending`` for later reconciliation.
    """
    cfg = cfg or Settings()
    if not user_id:
        raise ValidationError("Missing required field: userId")
    if not plan_id:
        raise ValidationError("Missing required field: planId")
    parsed_amount = parse_amount(amount)
    phone = format_phone(phone_number)
    if not is_valid_phone(phone):
        raise ValidationError("Invalid phone number format. Must be +237XXXXXXXXX")
    code = await _choose_correspondent(client, phone, correspondent)

    deposit_id = str(uuid4())
    statement = statement_description(plan_id, description, is_extension)
    payment_id = await asyncio.to_thread(
        _create_payment_row,
        user_id=user_id,
        amount=parsed_amount,
        currency=cfg.currency,
        deposit_id=deposit_id,
        plan_id=plan_id,
        phone=phone,
        correspondent=code,
        description=description or f"DULU {plan_id}",
        is_extension=is_extension,
    )
    logger.info("Payment record created: %s", payment_id, extra={"deposit_id": deposit_id})

    now = datetime.now(timezone.utc)
    try:
        deposit = await client.create_deposit(
            deposit_id=deposit_id,
            amount=parsed_amount,
            currency=cfg.currency,
            correspondent=code,
            msisdn=to_msisdn(phone),
            statement_description=statement,
            customer_timestamp=now.isoformat(),
        )
    except ProviderError as exc:
        payment_initiated_total.labels("error").inc()
        await asyncio.to_thread(_record_provider_error, payment_id, exc.message, now)
        exc.deposit_id = deposit_id
        raise

    await asyncio.to_thread(_store_initial_response, payment_id, deposit, now, cfg)
    label = deposit.status.upper()
    payment_initiated_total.labels(label if label in PROVIDER_STATUSES else "other").inc()
    if deposit.status.upper() != "ACCEPTED":
        message = deposit.rejection_message or deposit.reason or "Deposit was not accepted"
        logger.warning(
            "deposit %s not accepted: %s", deposit_id, deposit.status
        )
        raise ProviderError(
            message, deposit_id=deposit_id, provider_status=deposit.status
        )

    return DepositResult(
        payment_id=payment_id,
        deposit_id=deposit_id,
        status=deposit.status,
        message=deposit.reason or "Deposit initiated successfully",
        created=deposit.created,
        is_extension=is_extension,
    )
