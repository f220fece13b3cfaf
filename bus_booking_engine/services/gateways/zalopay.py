"""
ZaloPay gateway (v2 create order, callback verification, refund API).
"""

import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping

import httpx

from .base import (
    CallbackVerification,
    PaymentInitiationRequest,
    PaymentInitiationResult,
    RefundRequest,
    RefundResult,
    hmac_hex,
    signatures_match,
)
from ...models.payment import PaymentStatus
from ...utils.exceptions import CallbackVerificationError, GatewayError

logger = logging.getLogger(__name__)

ZALOPAY_TIMEZONE = timezone(timedelta(hours=7))
RETURN_SUCCESS = 1
RETURN_PROCESSING = 3


def app_trans_id(merchant_order_ref: str) -> str:
    """ZaloPay transaction ids are ``yymmdd_<ref>`` in Vietnam local time."""
    return f"{datetime.now(ZALOPAY_TIMEZONE):%y%m%d}_{merchant_order_ref}"


class ZaloPayGateway:
    code = "zalopay"
    settles_immediately = False

    def __init__(
        self,
        app_id: str,
        key1: str,
        key2: str,
        endpoint: str,
        return_url: str,
        callback_url: str,
        timeout: float = 10.0,
    ):
        self.app_id = app_id
        self.key1 = key1
        self.key2 = key2
        self.endpoint = endpoint.rstrip("/")
        self.return_url = return_url
        self.callback_url = callback_url
        self.timeout = timeout

    async def _post(self, path: str, form: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.endpoint}{path}", data=form)

        if response.status_code >= 500:
            raise GatewayError(self.code, f"{path} returned {response.status_code}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError:
            raise GatewayError(self.code, f"malformed response from {path}", status_code=response.status_code)

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        embed_data = json.dumps({"redirecturl": request.return_url or self.return_url})
        form: Dict[str, Any] = {
            "app_id": self.app_id,
            "app_trans_id": app_trans_id(request.merchant_order_ref),
            "app_user": request.extra.get("app_user", "guest"),
            "app_time": int(time.time() * 1000),
            "amount": int(request.amount),
            "item": "[]",
            "embed_data": embed_data,
            "description": request.order_info,
            "bank_code": request.bank_code or "",
            "callback_url": self.callback_url,
        }
        mac_input = "|".join(str(form[name]) for name in (
            "app_id", "app_trans_id", "app_user", "amount", "app_time", "embed_data", "item"
        ))
        form["mac"] = hmac_hex(self.key1, mac_input)

        data = await self._post("/v2/create", form)
        if data.get("return_code") != RETURN_SUCCESS:
            raise GatewayError(self.code, data.get("return_message") or "create order failed")

        return PaymentInitiationResult(
            payment_url=data.get("order_url"),
            gateway_reference=form["app_trans_id"],
            raw=data,
        )

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        data_str = payload.get("data")
        if not data_str or not signatures_match(hmac_hex(self.key2, data_str), payload.get("mac")):
            raise CallbackVerificationError(self.code)

        try:
            data = json.loads(data_str)
        except ValueError:
            raise CallbackVerificationError(self.code, "callback data is not JSON")

        trans_id = str(data.get("app_trans_id", ""))
        if "_" not in trans_id:
            raise CallbackVerificationError(self.code, "unrecognised app_trans_id")
        merchant_order_ref = trans_id.split("_", 1)[1]

        # ZaloPay only calls back for successful payments
        return CallbackVerification(
            merchant_order_ref=merchant_order_ref,
            status=PaymentStatus.COMPLETED,
            transaction_no=str(data["zp_trans_id"]) if data.get("zp_trans_id") else None,
            amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
            raw=data,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        timestamp = int(time.time() * 1000)
        m_refund_id = f"{datetime.now(ZALOPAY_TIMEZONE):%y%m%d}_{self.app_id}_{uuid.uuid4().hex[:10]}"
        form: Dict[str, Any] = {
            "app_id": self.app_id,
            "m_refund_id": m_refund_id,
            "zp_trans_id": request.transaction_no,
            "amount": int(request.amount),
            "timestamp": timestamp,
            "description": request.reason,
        }
        mac_input = "|".join(str(form[name]) for name in (
            "app_id", "zp_trans_id", "amount", "description", "timestamp"
        ))
        form["mac"] = hmac_hex(self.key1, mac_input)

        data = await self._post("/v2/refund", form)
        return RefundResult(
            success=data.get("return_code") in (RETURN_SUCCESS, RETURN_PROCESSING),
            refund_reference=str(data.get("refund_id") or m_refund_id),
            message=data.get("return_message"),
            raw=data,
        )
