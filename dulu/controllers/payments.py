import asyncio
import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from dulu import db as db_module
from dulu.config import Settings
from dulu.dependencies import (
    ErrorResponse,
    client_ip,
    get_pawapay_client,
    rate_limit,
    verify_signature,
)
from dulu.errors import PaymentError, ProviderError, ReconciliationError
from dulu.errors import ValidationError as PaymentValidationError
from dulu.metrics import webhook_forbidden_total
from dulu.models import ErrorCode, Payment, PaymentWebhook, User
from dulu.services.deposits import initiate_deposit
from dulu.services.pawapay import PawaPayClient, parse_deposit_status
from dulu.services.phone import CORRESPONDENTS, correspondent_for_phone
from dulu.services.reconciler import find_payment, reconcile_deposit_status, sync_deposit

settings = Settings()
logger = logging.getLogger(__name__)
HMAC_SECRET = settings.hmac_secret
STATUS_OK_MESSAGE = "Status retrieved successfully"

router = APIRouter(prefix="/payments")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PaymentCreateRequest(_CamelModel):
    amount: Decimal
    phone_number: str = Field(alias="phoneNumber")
    correspondent: str | None = None
    plan_id: str = Field(alias="planId")
    user_id: str = Field(alias="userId")
    description: str | None = None
    is_extension: bool = Field(False, alias="isExtension")


class PaymentCreateResponse(_CamelModel):
    success: bool = True
    payment_id: int = Field(alias="paymentId")
    deposit_id: str = Field(alias="depositId")
    status: str
    message: str
    created: str | None = None
    is_extension: bool = Field(alias="isExtension")


class PaymentStatusRequest(_CamelModel):
    deposit_id: str = Field(alias="depositId", min_length=1)


class PaymentRecordSummary(_CamelModel):
    id: int
    status: str
    plan_id: str = Field(alias="planId")
    amount: Decimal
    is_extension: bool = Field(alias="isExtension")


class PaymentPollResponse(_CamelModel):
    success: bool = True
    deposit_id: str = Field(alias="depositId")
    status: str
    message: str
    deposited_amount: str | None = Field(None, alias="depositedAmount")
    correspondent_ids: dict[str, str] | None = Field(None, alias="correspondentIds")
    responded_by_payer: str | None = Field(None, alias="respondedByPayer")
    created: str | None = None
    rejection_reason: dict[str, Any] | None = Field(None, alias="rejectionReason")
    payment_record: PaymentRecordSummary | None = Field(None, alias="paymentRecord")
    user_subscription_updated: bool = Field(False, alias="userSubscriptionUpdated")


class WebhookResponse(_CamelModel):
    success: bool = True
    message: str = "Webhook processed successfully"
    payment_id: int = Field(alias="paymentId")
    new_status: str = Field(alias="newStatus")
    applied: bool
    user_subscription_updated: bool = Field(alias="userSubscriptionUpdated")


class PaymentStatusResponse(_CamelModel):
    deposit_id: str = Field(alias="depositId")
    status: str
    subscription_level: str | None = Field(None, alias="subscriptionLevel")
    subscription_end_date: date | None = Field(None, alias="subscriptionEndDate")


class PaymentHistoryItem(_CamelModel):
    id: int
    deposit_id: str = Field(alias="depositId")
    amount: Decimal
    currency: str
    status: str
    plan_id: str = Field(alias="planId")
    payment_method: str | None = Field(None, alias="paymentMethod")
    is_extension: bool = Field(alias="isExtension")
    created_at: datetime | None = Field(None, alias="createdAt")


class CorrespondentItem(_CamelModel):
    correspondent: str
    name: str


class CorrespondentsResponse(_CamelModel):
    correspondents: list[CorrespondentItem]
    detected: str | None = None


class PricingResponse(_CamelModel):
    plan_id: str = Field("pro", alias="planId")
    amount: int
    currency: str


def _raise_payment_error(exc: PaymentError) -> NoReturn:
    if isinstance(exc, PaymentValidationError):
        status_code, code = 400, ErrorCode.BAD_REQUEST
    elif isinstance(exc, ProviderError):
        status_code, code = 502, ErrorCode.PROVIDER_ERROR
    else:
        status_code, code = 500, ErrorCode.RECONCILIATION_ERROR
    err = ErrorResponse(code=code, message=exc.message)
    raise HTTPException(status_code=status_code, detail=err.model_dump()) from exc


def _summary(payment: Payment) -> PaymentRecordSummary:
    return PaymentRecordSummary(
        id=payment.id,
        status=payment.status,
        plan_id=payment.plan_id,
        amount=payment.amount,
        is_extension=payment.is_extension,
    )


@router.post(
    "/create",
    response_model=PaymentCreateResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def create_payment(
    request: Request,
    user_id: str = Depends(rate_limit),
    client: PawaPayClient = Depends(get_pawapay_client),
):
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Invalid JSON payload")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    try:
        body = PaymentCreateRequest.model_validate(payload)
    except ValidationError as exc:
        err = ErrorResponse(
            code=ErrorCode.BAD_REQUEST,
            message="Missing required fields: amount, phoneNumber, planId, userId",
        )
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    if body.user_id != user_id:
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="User ID mismatch")
        raise HTTPException(status_code=401, detail=err.model_dump())

    try:
        result = await initiate_deposit(
            client,
            user_id=body.user_id,
            amount=body.amount,
            phone_number=body.phone_number,
            plan_id=body.plan_id,
            correspondent=body.correspondent,
            description=body.description,
            is_extension=body.is_extension,
            cfg=settings,
        )
    except PaymentError as exc:
        logger.warning("payment initiation failed: %s", exc.message)
        _raise_payment_error(exc)

    return PaymentCreateResponse(
        payment_id=result.payment_id,
        deposit_id=result.deposit_id,
        status=result.status,
        message=result.message,
        created=result.created,
        is_extension=result.is_extension,
    )


@router.post(
    "/status",
    response_model=PaymentPollResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def poll_payment_status(
    body: PaymentStatusRequest,
    user_id: str = Depends(rate_limit),
    client: PawaPayClient = Depends(get_pawapay_client),
):
    def _owned() -> bool:
        with db_module.SessionLocal() as db:
            payment = find_payment(db, body.deposit_id)
            return payment is not None and payment.user_id == user_id

    if not await asyncio.to_thread(_owned):
        err = ErrorResponse(code=ErrorCode.NOT_FOUND, message="Payment not found")
        raise HTTPException(status_code=404, detail=err.model_dump())

    try:
        deposit, payment, result = await sync_deposit(client, body.deposit_id, cfg=settings)
    except PaymentError as exc:
        logger.warning("status check for %s failed: %s", body.deposit_id, exc.message)
        _raise_payment_error(exc)

    rejection = deposit.rejection_reason
    return PaymentPollResponse(
        deposit_id=deposit.deposit_id,
        status=deposit.status,
        message=deposit.reason or deposit.rejection_message or STATUS_OK_MESSAGE,
        deposited_amount=deposit.deposited_amount,
        correspondent_ids=deposit.correspondent_ids,
        responded_by_payer=deposit.responded_by_payer,
        created=deposit.created,
        rejection_reason=rejection.model_dump(by_alias=True) if rejection else None,
        payment_record=_summary(payment) if payment else None,
        user_subscription_updated=bool(result and result.subscription_updated),
    )


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def pawapay_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="X-Signature"),
):
    ip = client_ip(request)
    if ip not in settings.pawapay_ips:
        webhook_forbidden_total.inc()
        logger.warning("audit: forbidden ip %s", ip)
        err = ErrorResponse(code=ErrorCode.FORBIDDEN, message="IP address forbidden")
        raise HTTPException(status_code=403, detail=err.model_dump())

    raw_body = await request.body()
    secure = os.getenv("SECURE_WEBHOOK", "").lower() in {"1", "true", "yes", "on"}
    if secure and not verify_signature(x_signature, raw_body, HMAC_SECRET):
        webhook_forbidden_total.inc()
        logger.warning("audit: invalid webhook signature")
        err = ErrorResponse(code=ErrorCode.FORBIDDEN, message="Invalid webhook signature")
        raise HTTPException(status_code=403, detail=err.model_dump())

    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.exception("failed to parse webhook body as JSON")
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Malformed JSON body")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc
    if not isinstance(data, dict):
        logger.warning("audit: non-object webhook payload")
        err = ErrorResponse(
            code=ErrorCode.BAD_REQUEST, message="Payload must be a JSON object"
        )
        raise HTTPException(status_code=400, detail=err.model_dump())

    try:
        callback = parse_deposit_status(data)
    except ProviderError as exc:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Invalid webhook payload")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    now = datetime.now(timezone.utc)
    rejection = callback.rejection_reason
    audit = {
        "webhook_payload": data,
        "deposited_amount": callback.deposited_amount,
        "correspondent_ids": callback.correspondent_ids,
        "rejection_reason": rejection.model_dump(by_alias=True) if rejection else None,
        "webhook_received_at": now.isoformat(),
    }
    try:
        payment, result = await asyncio.to_thread(
            reconcile_deposit_status,
            callback.deposit_id,
            callback.status,
            source="webhook",
            audit=audit,
            cfg=settings,
            now=now,
        )
    except ReconciliationError as exc:
        _raise_payment_error(exc)

    if payment is None or result is None:
        logger.error("Payment record not found for depositId: %s", callback.deposit_id)
        err = ErrorResponse(code=ErrorCode.NOT_FOUND, message="Payment record not found")
        raise HTTPException(status_code=404, detail=err.model_dump())

    def _log_webhook() -> None:
        try:
            with db_module.SessionLocal() as db:
                db.add(
                    PaymentWebhook(
                        payment_id=payment.id,
                        deposit_id=callback.deposit_id,
                        status=callback.status,
                        payload=data,
                        processed_at=now,
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to log webhook (non-critical): %s", exc)

    await asyncio.to_thread(_log_webhook)
    return WebhookResponse(
        payment_id=payment.id,
        new_status=result.status,
        applied=result.applied,
        user_subscription_updated=result.subscription_updated,
    )


@router.get("", response_model=list[PaymentHistoryItem])
async def payment_history(user_id: str = Depends(rate_limit)):
    def _db_call() -> list[PaymentHistoryItem]:
        with db_module.SessionLocal() as db:
            rows = (
                db.query(Payment)
                .filter_by(user_id=user_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .all()
            )
            return [
                PaymentHistoryItem(
                    id=row.id,
                    deposit_id=row.transaction_id,
                    amount=row.amount,
                    currency=row.currency,
                    status=row.status,
                    plan_id=row.plan_id,
                    payment_method=row.payment_method,
                    is_extension=row.is_extension,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    return await asyncio.to_thread(_db_call)


@router.get("/correspondents", response_model=CorrespondentsResponse)
async def list_correspondents(
    phone: str | None = Query(None),
    _: str = Depends(rate_limit),
):
    items = [
        CorrespondentItem(correspondent=code, name=name)
        for code, name in CORRESPONDENTS.items()
    ]
    detected = correspondent_for_phone(phone) if phone else None
    return CorrespondentsResponse(correspondents=items, detected=detected)


@router.get("/pricing", response_model=PricingResponse)
async def pricing(_: str = Depends(rate_limit)):
    return PricingResponse(amount=settings.pro_price, currency=settings.currency)


@router.get(
    "/{deposit_id}",
    response_model=PaymentStatusResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def payment_status(deposit_id: str, user_id: str = Depends(rate_limit)):
    def _db_call() -> PaymentStatusResponse:
        with db_module.SessionLocal() as db:
            payment = (
                db.query(Payment)
                .filter_by(transaction_id=deposit_id, user_id=user_id)
                .first()
            )
            if not payment:
                err = ErrorResponse(code=ErrorCode.NOT_FOUND, message="Payment not found")
                raise HTTPException(status_code=404, detail=err.model_dump())
            user = db.get(User, payment.user_id)
            return PaymentStatusResponse(
                deposit_id=payment.transaction_id,
                status=payment.status,
                subscription_level=user.subscription_level if user else None,
                subscription_end_date=user.subscription_end_date if user else None,
            )

    return await asyncio.to_thread(_db_call)
