"""
VNPay redirect gateway (payment URL, return/IPN verification, refund API).
"""

import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

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

VNPAY_VERSION = "2.1.0"
VNPAY_TIMEZONE = timezone(timedelta(hours=7))
RESPONSE_SUCCESS = "00"
RESPONSE_CUSTOMER_CANCELLED = "24"
REFUND_FULL = "02"
REFUND_PARTIAL = "03"


def vnpay_timestamp(value: datetime) -> str:
    """VNPay expects yyyyMMddHHmmss in Vietnam local time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(VNPAY_TIMEZONE).strftime("%Y%m%d%H%M%S")


class VNPayGateway:
    code = "vnpay"
    settles_immediately = False

    def __init__(
        self,
        tmn_code: str,
        hash_secret: str,
        payment_url: str,
        api_url: str,
        return_url: str,
        timeout: float = 10.0,
    ):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.api_url = api_url
        self.return_url = return_url
        self.timeout = timeout

    def sign(self, params: Mapping[str, Any]) -> str:
        """HMAC-SHA512 over the sorted, URL-encoded parameters."""
        query = urlencode(sorted((k, str(v)) for k, v in params.items()))
        return hmac_hex(self.hash_secret, query, hashlib.sha512)

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        now = datetime.now(timezone.utc)
        params: Dict[str, Any] = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": int(request.amount * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": request.merchant_order_ref,
            "vnp_OrderInfo": request.order_info,
            "vnp_OrderType": "travel",
            "vnp_ReturnUrl": request.return_url or self.return_url,
            "vnp_IpAddr": request.client_ip,
            "vnp_CreateDate": vnpay_timestamp(now),
            "vnp_ExpireDate": vnpay_timestamp(request.expires_at),
            "vnp_Locale": request.locale or "vn",
        }
        if request.bank_code:
            params["vnp_BankCode"] = request.bank_code

        query = urlencode(sorted((k, str(v)) for k, v in params.items()))
        secure_hash = hmac_hex(self.hash_secret, query, hashlib.sha512)
        payment_url = f"{self.payment_url}?{query}&vnp_SecureHash={secure_hash}"

        logger.info(f"VNPay payment URL built for {request.merchant_order_ref}")
        return PaymentInitiationResult(
            payment_url=payment_url,
            gateway_reference=request.merchant_order_ref,
            raw={"vnp_CreateDate": params["vnp_CreateDate"]},
        )

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        received_hash = payload.get("vnp_SecureHash")
        params = {
            key: value for key, value in payload.items()
            if key.startswith("vnp_") and key not in ("vnp_SecureHash", "vnp_SecureHashType")
        }
        if not signatures_match(self.sign(params), received_hash):
            raise CallbackVerificationError(self.code)

        merchant_order_ref = params.get("vnp_TxnRef")
        if not merchant_order_ref:
            raise CallbackVerificationError(self.code, "missing vnp_TxnRef")

        response_code = params.get("vnp_ResponseCode")
        transaction_status = params.get("vnp_TransactionStatus", response_code)
        if response_code == RESPONSE_SUCCESS and transaction_status == RESPONSE_SUCCESS:
            status = PaymentStatus.COMPLETED
        elif response_code == RESPONSE_CUSTOMER_CANCELLED:
            status = PaymentStatus.CANCELLED
        else:
            status = PaymentStatus.FAILED

        amount: Optional[Decimal] = None
        if params.get("vnp_Amount"):
            amount = Decimal(str(params["vnp_Amount"])) / 100

        return CallbackVerification(
            merchant_order_ref=merchant_order_ref,
            status=status,
            transaction_no=params.get("vnp_TransactionNo"),
            amount=amount,
            raw=dict(params),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        now = datetime.now(timezone.utc)
        transaction_type = REFUND_FULL if request.amount >= request.total_amount else REFUND_PARTIAL
        body = {
            "vnp_RequestId": uuid.uuid4().hex[:32],
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TransactionType": transaction_type,
            "vnp_TxnRef": request.merchant_order_ref,
            "vnp_Amount": int(request.amount * 100),
            "vnp_TransactionNo": request.transaction_no or "",
            "vnp_TransactionDate": vnpay_timestamp(request.transaction_date),
            "vnp_CreateBy": request.requested_by,
            "vnp_CreateDate": vnpay_timestamp(now),
            "vnp_IpAddr": request.client_ip,
            "vnp_OrderInfo": request.reason,
        }
        sign_fields = [
            "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode",
            "vnp_TransactionType", "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo",
            "vnp_TransactionDate", "vnp_CreateBy", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
        ]
        body["vnp_SecureHash"] = hmac_hex(
            self.hash_secret,
            "|".join(str(body[name]) for name in sign_fields),
            hashlib.sha512,
        )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.api_url, json=body)

        if response.status_code >= 500:
            raise GatewayError(self.code, f"refund endpoint returned {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(self.code, "malformed refund response", status_code=response.status_code)

        success = data.get("vnp_ResponseCode") == RESPONSE_SUCCESS
        return RefundResult(
            success=success,
            refund_reference=data.get("vnp_TransactionNo"),
            message=data.get("vnp_Message"),
            raw=data,
        )
