"""Payment gateway adapters and the registry that selects them by method code."""

from .base import (
    CallbackVerification,
    PaymentGatewayAdapter,
    PaymentInitiationRequest,
    PaymentInitiationResult,
    RefundRequest,
    RefundResult,
)
from .cash import CashGateway
from .momo import MoMoGateway
from .vnpay import VNPayGateway
from .zalopay import ZaloPayGateway
from .registry import GatewayRegistry, build_gateway_registry, call_gateway, get_gateway_registry

__all__ = [
    "CallbackVerification",
    "PaymentGatewayAdapter",
    "PaymentInitiationRequest",
    "PaymentInitiationResult",
    "RefundRequest",
    "RefundResult",
    "CashGateway",
    "MoMoGateway",
    "VNPayGateway",
    "ZaloPayGateway",
    "GatewayRegistry",
    "build_gateway_registry",
    "call_gateway",
    "get_gateway_registry",
]
