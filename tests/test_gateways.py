"""
Tests for payment gateway adapters, the registry and the circuit breaker.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import parse_qsl, urlsplit

import pytest

from bus_booking_engine.config import Settings
from bus_booking_engine.models import PaymentStatus
from bus_booking_engine.services.gateways import (
    CashGateway,
    MoMoGateway,
    PaymentInitiationRequest,
    VNPayGateway,
    ZaloPayGateway,
    build_gateway_registry,
    call_gateway,
)
from bus_booking_engine.services.gateways.base import hmac_hex
from bus_booking_engine.services.gateways.momo import IPN_SIGNATURE_FIELDS
from bus_booking_engine.utils.circuit_breaker import get_gateway_circuit_breaker
from bus_booking_engine.utils.exceptions import (
    CallbackVerificationError,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    ValidationError,
)


@pytest.fixture
def vnpay():
    return VNPayGateway(
        tmn_code="TESTTMN",
        hash_secret="vnpay-secret",
        payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        api_url="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
        return_url="http://localhost:3000/payment/result",
    )


@pytest.fixture
def momo():
    return MoMoGateway(
        partner_code="MOMOTEST",
        access_key="momo-access",
        secret_key="momo-secret",
        endpoint="https://test-payment.momo.vn",
        return_url="http://localhost:3000/payment/result",
        ipn_url="http://localhost:8000/api/v1/payments/momo/callback",
    )


@pytest.fixture
def zalopay():
    return ZaloPayGateway(
        app_id="2553",
        key1="zalo-key1",
        key2="zalo-key2",
        endpoint="https://sb-openapi.zalopay.vn",
        return_url="http://localhost:3000/payment/result",
        callback_url="http://localhost:8000/api/v1/payments/zalopay/callback",
    )


def _vnpay_callback(gateway, **overrides):
    params = {
        "vnp_TxnRef": "ORD1718000000000123456",
        "vnp_Amount": "15000000",
        "vnp_ResponseCode": "00",
        "vnp_TransactionStatus": "00",
        "vnp_TransactionNo": "14123456",
        "vnp_TmnCode": "TESTTMN",
    }
    params.update(overrides)
    params["vnp_SecureHash"] = gateway.sign(params)
    params["vnp_SecureHashType"] = "HmacSHA512"
    return params


def _momo_ipn(gateway, **overrides):
    payload = {
        "partnerCode": "MOMOTEST",
        "orderId": "ORD1718000000000123456",
        "requestId": "ORD1718000000000123456",
        "amount": 150000,
        "orderInfo": "Bus tickets A1",
        "orderType": "momo_wallet",
        "transId": 2588659987,
        "resultCode": 0,
        "message": "Successful.",
        "payType": "qr",
        "responseTime": 1718000000000,
        "extraData": "",
    }
    payload.update(overrides)
    payload["signature"] = gateway.sign({**payload, "accessKey": gateway.access_key}, IPN_SIGNATURE_FIELDS)
    return payload


class TestVNPayGateway:
    """Test VNPay URL signing and callback verification."""

    async def test_payment_url_is_signed(self, vnpay):
        result = await vnpay.initiate(PaymentInitiationRequest(
            merchant_order_ref="ORD1718000000000123456",
            amount=Decimal("150000"),
            order_info="Bus tickets A1",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
        ))

        url = urlsplit(result.payment_url)
        params = dict(parse_qsl(url.query))
        secure_hash = params.pop("vnp_SecureHash")

        assert params["vnp_Amount"] == "15000000"
        assert params["vnp_TxnRef"] == "ORD1718000000000123456"
        assert vnpay.sign(params) == secure_hash

    async def test_successful_callback(self, vnpay):
        verification = await vnpay.verify(_vnpay_callback(vnpay))

        assert verification.status == PaymentStatus.COMPLETED
        assert verification.amount == Decimal("150000")
        assert verification.transaction_no == "14123456"
        assert verification.merchant_order_ref == "ORD1718000000000123456"

    async def test_customer_cancelled(self, vnpay):
        verification = await vnpay.verify(_vnpay_callback(vnpay, vnp_ResponseCode="24", vnp_TransactionStatus="02"))
        assert verification.status == PaymentStatus.CANCELLED

    async def test_other_response_codes_fail(self, vnpay):
        verification = await vnpay.verify(_vnpay_callback(vnpay, vnp_ResponseCode="51", vnp_TransactionStatus="02"))
        assert verification.status == PaymentStatus.FAILED

    async def test_tampered_amount_is_rejected(self, vnpay):
        payload = _vnpay_callback(vnpay)
        payload["vnp_Amount"] = "100"

        with pytest.raises(CallbackVerificationError):
            await vnpay.verify(payload)

    @pytest.mark.parametrize("mangle", [str.upper, lambda secure_hash: "\u00e9" + secure_hash[1:]])
    async def test_altered_secure_hash_is_rejected(self, vnpay, mangle):
        payload = _vnpay_callback(vnpay)
        payload["vnp_SecureHash"] = mangle(payload["vnp_SecureHash"])

        with pytest.raises(CallbackVerificationError):
            await vnpay.verify(payload)

    async def test_non_ascii_hash_without_signed_fields(self, vnpay):
        with pytest.raises(CallbackVerificationError):
            await vnpay.verify({"vnp_TxnRef": "ORD1", "vnp_ResponseCode": "00", "vnp_SecureHash": "\u00e9" * 10})


class TestMoMoGateway:
    """Test MoMo IPN verification."""

    async def test_successful_ipn(self, momo):
        verification = await momo.verify(_momo_ipn(momo))

        assert verification.status == PaymentStatus.COMPLETED
        assert verification.amount == Decimal("150000")
        assert verification.transaction_no == "2588659987"

    async def test_user_declined(self, momo):
        verification = await momo.verify(_momo_ipn(momo, resultCode=1006))
        assert verification.status == PaymentStatus.CANCELLED

    async def test_forged_signature(self, momo):
        payload = _momo_ipn(momo)
        payload["signature"] = "0" * 64

        with pytest.raises(CallbackVerificationError):
            await momo.verify(payload)

    async def test_non_ascii_signature(self, momo):
        payload = _momo_ipn(momo)
        payload["signature"] = "\u00e9" + payload["signature"][1:]

        with pytest.raises(CallbackVerificationError):
            await momo.verify(payload)


class TestZaloPayGateway:
    """Test ZaloPay callback verification."""

    async def test_successful_callback(self, zalopay):
        data = json.dumps({"app_trans_id": "261018_ORD1718000000000123456", "zp_trans_id": 240331000000175, "amount": 150000})

        verification = await zalopay.verify({"data": data, "mac": hmac_hex("zalo-key2", data), "type": 1})

        assert verification.status == PaymentStatus.COMPLETED
        assert verification.merchant_order_ref == "ORD1718000000000123456"
        assert verification.amount == Decimal("150000")

    async def test_mac_signed_with_wrong_key(self, zalopay):
        data = json.dumps({"app_trans_id": "261018_ORD1", "amount": 150000})

        with pytest.raises(CallbackVerificationError):
            await zalopay.verify({"data": data, "mac": hmac_hex("zalo-key1", data)})

    async def test_upper_cased_mac_is_rejected(self, zalopay):
        data = json.dumps({"app_trans_id": "261018_ORD1", "amount": 150000})

        with pytest.raises(CallbackVerificationError):
            await zalopay.verify({"data": data, "mac": hmac_hex("zalo-key2", data).upper()})


class TestCashGateway:
    async def test_cash_has_no_callbacks(self):
        with pytest.raises(CallbackVerificationError):
            await CashGateway().verify({})


class TestGatewayRegistry:
    """Test building the registry from settings."""

    def test_methods_without_credentials_are_skipped(self):
        registry = build_gateway_registry(Settings(enabled_payment_methods=["cash", "vnpay", "momo"]))
        assert registry.codes() == ["cash"]

    def test_configured_methods_are_registered(self):
        registry = build_gateway_registry(Settings(
            enabled_payment_methods=["cash", "vnpay", "zalopay"],
            vnpay_tmn_code="TMN",
            vnpay_hash_secret="secret",
            zalopay_app_id="2553",
            zalopay_key1="k1",
            zalopay_key2="k2",
        ))

        assert registry.codes() == ["cash", "vnpay", "zalopay"]
        assert "VNPay" in registry
        assert isinstance(registry.get("ZALOPAY"), ZaloPayGateway)

    def test_unknown_method(self):
        registry = build_gateway_registry(Settings(enabled_payment_methods=["cash"]))
        with pytest.raises(ValidationError):
            registry.get("paypal")


class _FlakyGateway:
    code = "flaky"
    settles_immediately = False

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0

    async def initiate(self, request):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
            return None
        raise GatewayError(self.code, "connection refused")


class TestGatewayCircuitBreaker:
    """Test gateway calls through the circuit breaker."""

    async def test_circuit_opens_after_repeated_failures(self):
        gateway = _FlakyGateway()

        for _ in range(2):
            with pytest.raises(GatewayError):
                await call_gateway(gateway, "initiate", None, failure_threshold=2)

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await call_gateway(gateway, "initiate", None, failure_threshold=2)

        assert gateway.calls == 2
        assert exc_info.value.retry_after >= 1
        assert get_gateway_circuit_breaker("flaky").get_stats()["state"] == "open"

    async def test_slow_gateway_times_out(self):
        with pytest.raises(GatewayTimeoutError):
            await call_gateway(_FlakyGateway(delay=1.0), "initiate", None, timeout=0.05)
