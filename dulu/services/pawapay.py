from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from dulu.config import Settings
from dulu.errors import ProviderError
from dulu.metrics import provider_request_seconds

logger = logging.getLogger(__name__)

PROVIDER_STATUSES = ("ACCEPTED", "COMPLETED", "FAILED", "REJECTED")


class RejectionReason(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    rejection_code: str | None = Field(None, alias="rejectionCode")
    rejection_message: str | None = Field(None, alias="rejectionMessage")


class DepositStatus(BaseModel):
    """Canonical view of a PawaPay deposit, whatever shape it arrived in."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    deposit_id: str = Field(alias="depositId")
    status: str
    created: str | None = None
    reason: str | None = None
    deposited_amount: str | None = Field(None, alias="depositedAmount")
    correspondent_ids: dict[str, str] | None = Field(None, alias="correspondentIds")
    responded_by_payer: str | None = Field(None, alias="respondedByPayer")
    rejection_reason: RejectionReason | None = Field(None, alias="rejectionReason")

    @property
    def rejection_message(self) -> str | None:
        if self.rejection_reason is None:
            return None
        return self.rejection_reason.rejection_message

    def audit_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def parse_deposit_status(raw: Any) -> DepositStatus:
    """Accept an object or a single-element array from the status API."""
    if isinstance(raw, list):
        if not raw:
            raise ProviderError("PawaPay returned empty array")
        raw = raw[0]
    if not isinstance(raw, dict):
        raise ProviderError("PawaPay returned an unexpected payload")
    try:
        return DepositStatus.model_validate(raw)
    except PydanticValidationError as exc:
        raise ProviderError("PawaPay returned an invalid deposit payload") from exc


def format_amount(amount: Decimal | int | float | str) -> str:
    value = Decimal(str(amount))
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), "f")


class PawaPayClient:
    """Thin async client for the PawaPay deposits API."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, cfg: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "PawaPayClient":
        if not cfg.pawapay_api_token:
            raise ProviderError("PawaPay API token not configured")
        return cls(
            cfg.pawapay_url,
            cfg.pawapay_api_token,
            timeout=cfg.pawapay_timeout,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _send(
        self, operation: str, method: str, path: str, payload: dict | None = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                if method == "POST":
                    resp = await client.post(
                        url, json=payload, headers=self._headers(), timeout=self.timeout
                    )
                else:
                    resp = await client.get(
                        url, headers=self._headers(), timeout=self.timeout
                    )
        except httpx.HTTPError as exc:
            logger.error("PawaPay %s request failed: %s", operation, exc)
            raise ProviderError(f"PawaPay unreachable: {exc}") from exc
        finally:
            provider_request_seconds.labels(operation).observe(
                time.perf_counter() - start
            )

        if resp.status_code >= 400:
            logger.error(
                "PawaPay %s error response: %s %s",
                operation,
                resp.status_code,
                resp.text,
            )
            raise ProviderError(
                f"PawaPay API error: {resp.status_code} - {resp.text}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            logger.error("PawaPay %s response parsing failed: %s", operation, exc)
            raise ProviderError("PawaPay returned a non-JSON response") from exc

    async def create_deposit(
        self,
        *,
        deposit_id: str,
        amount: Decimal,
        currency: str,
        correspondent: str,
        msisdn: str,
        statement_description: str,
        customer_timestamp: str,
    ) -> DepositStatus:
        payload = {
            "depositId": deposit_id,
            "amount": format_amount(amount),
            "currency": currency,
            "correspondent": correspondent,
            "payer": {"type": "MSISDN", "address": {"value": msisdn}},
            "customerTimestamp": customer_timestamp,
            "statementDescription": statement_description,
        }
        logger.info(
            "sending deposit request",
            extra={"deposit_id": deposit_id, "correspondent": correspondent},
        )
        raw = await self._send("create_deposit", "POST", "/deposits", payload)
        if isinstance(raw, dict) and not raw.get("depositId"):
            raw = {**raw, "depositId": deposit_id}
        return parse_deposit_status(raw)

    async def get_deposit(self, deposit_id: str) -> DepositStatus:
        raw = await self._send("get_deposit", "GET", f"/deposits/{deposit_id}")
        return parse_deposit_status(raw)

    async def predict_correspondent(self, msisdn: str) -> str:
        """Ask PawaPay which operator serves ``msisdn``."""
        raw = await self._send(
            "predict_correspondent", "POST", "/v1/predict-correspondent", {"msisdn": msisdn}
        )
        correspondent = raw.get("correspondent") if isinstance(raw, dict) else None
        if not correspondent:
            raise ProviderError("PawaPay could not predict the correspondent")
        return correspondent
