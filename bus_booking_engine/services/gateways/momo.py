"""
MoMo e-wallet gateway (captureWallet create, IPN verification, refund API).
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Mapping, Sequence

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

RESULT_SUCCESS = 0
RESULT_USER_DECLINED = 1006

CREATE_SIGNATURE_FIELDS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
IPN_SIGNATURE_FIELDS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
)
REFUND_SIGNATURE_FIELDS = (
    "accessKey", "amount", "description", "orderId", "partnerCode", "requestId", "transId",
)


class MoMoGateway:
    code = "momo"
    settles_immediately = False

    def __init__(
        self,
        partner_code: str,
        access_key: str,
        secret_key: str,
        endpoint: str,
        return_url: str,
        ipn_url: str,
        timeout: float = 10.0,
    ):
        self.partner_code = partner_code
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint = endpoint.rstrip("/")
        self.return_url = return_url
        self.ipn_url = ipn_url
        self.timeout = timeout

    def sign(self, values: Mapping[str, Any], fields: Sequence[str]) -> str:
        """HMAC-SHA256 over ``key=value`` pairs in MoMo's fixed field order."""
        raw = "&".join(f"{name}={values.get(name, '')}" for name in fields)
        return hmac_hex(self.secret_key, raw)

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.endpoint}{path}", json=body)

        if response.status_code >= 500:
            raise GatewayError(self.code, f"{path} returned {response.status_code}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError:
            raise GatewayError(self.code, f"malformed response from {path}", status_code=response.status_code)

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        body: Dict[str, Any] = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "requestId": request.merchant_order_ref,
            "amount": int(request.amount),
            "orderId": request.merchant_order_ref,
            "orderInfo": request.order_info,
            "redirectUrl": request.return_url or self.return_url,
            "ipnUrl": self.ipn_url,
            "extraData": "",
            "requestType": "captureWallet",
            "lang": request.locale or "vi",
        }
        body["signature"] = self.sign(body, CREATE_SIGNATURE_FIELDS)

        data = await self._post("/v2/gateway/api/create", body)
        if data.get("resultCode") != RESULT_SUCCESS:
            raise GatewayError(self.code, data.get("message") or f"create failed with resultCode {data.get('resultCode')}")

        return PaymentInitiationResult(
            payment_url=data.get("payUrl"),
            gateway_reference=data.get("requestId"),
            raw=data,
        )

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        values = dict(payload)
        values["accessKey"] = self.access_key
        if not signatures_match(self.sign(values, IPN_SIGNATURE_FIELDS), payload.get("signature")):
            raise CallbackVerificationError(self.code)

        merchant_order_ref = payload.get("orderId")
        if not merchant_order_ref:
            raise CallbackVerificationError(self.code, "missing orderId")

        result_code = int(payload.get("resultCode", -1))
        if result_code == RESULT_SUCCESS:
            status = PaymentStatus.COMPLETED
        elif result_code == RESULT_USER_DECLINED:
            status = PaymentStatus.CANCELLED
        else:
            status = PaymentStatus.FAILED

        return CallbackVerification(
            merchant_order_ref=merchant_order_ref,
            status=status,
            transaction_no=str(payload["transId"]) if payload.get("transId") else None,
            amount=Decimal(str(payload["amount"])) if payload.get("amount") is not None else None,
            raw=dict(payload),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        refund_id = f"RF{uuid.uuid4().hex[:20]}"
        body: Dict[str, Any] = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "orderId": refund_id,
            "requestId": refund_id,
            "amount": int(request.amount),
            "transId": request.transaction_no,
            "lang": "vi",
            "description": request.reason,
        }
        body["signature"] = self.sign(body, REFUND_SIGNATURE_FIELDS)

        data = await self._post("/v2/gateway/api/refund", body)
        return RefundResult(
            success=data.get("resultCode") == RESULT_SUCCESS,
            refund_reference=str(data.get("transId")) if data.get("transId") else refund_id,
            message=data.get("message"),
            raw=data,
        )
