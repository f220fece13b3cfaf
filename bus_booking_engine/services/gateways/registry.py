"""
Lookup table from payment method code to gateway adapter.
"""

import logging
from functools import lru_cache
from typing import Any, Dict, List

from .base import PaymentGatewayAdapter
from .cash import CashGateway
from .momo import MoMoGateway
from .vnpay import VNPayGateway
from .zalopay import ZaloPayGateway
from ...config import Settings, get_settings
from ...utils.circuit_breaker import get_gateway_circuit_breaker
from ...utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Adapters keyed by lower-cased payment method code."""

    def __init__(self):
        self._adapters: Dict[str, PaymentGatewayAdapter] = {}

    def register(self, adapter: PaymentGatewayAdapter) -> None:
        self._adapters[adapter.code.lower()] = adapter
        logger.info(f"Registered payment gateway {adapter.code}")

    def get(self, code: str) -> PaymentGatewayAdapter:
        """
        Resolve a payment method code.

        Raises:
            ValidationError: When no adapter is registered for the code
        """
        adapter = self._adapters.get((code or "").lower())
        if adapter is None:
            raise ValidationError(
                f"Unsupported payment method: {code}",
                field_errors={"payment_method_code": [f"expected one of {', '.join(self.codes())}"]}
            )
        return adapter

    def codes(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, code: str) -> bool:
        return (code or "").lower() in self._adapters


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    """Register every enabled method whose credentials are configured."""
    registry = GatewayRegistry()
    enabled = {code.lower() for code in settings.enabled_payment_methods}
    ipn_base = settings.payment_ipn_base_url.rstrip("/")

    if "cash" in enabled:
        registry.register(CashGateway())

    if "vnpay" in enabled:
        if settings.vnpay_tmn_code and settings.vnpay_hash_secret:
            registry.register(VNPayGateway(
                tmn_code=settings.vnpay_tmn_code,
                hash_secret=settings.vnpay_hash_secret,
                payment_url=settings.vnpay_payment_url,
                api_url=settings.vnpay_api_url,
                return_url=settings.payment_return_url,
                timeout=settings.gateway_timeout_seconds,
            ))
        else:
            logger.warning("VNPay enabled but credentials are missing; skipping")

    if "momo" in enabled:
        if settings.momo_partner_code and settings.momo_access_key and settings.momo_secret_key:
            registry.register(MoMoGateway(
                partner_code=settings.momo_partner_code,
                access_key=settings.momo_access_key,
                secret_key=settings.momo_secret_key,
                endpoint=settings.momo_endpoint,
                return_url=settings.payment_return_url,
                ipn_url=f"{ipn_base}/momo/callback",
                timeout=settings.gateway_timeout_seconds,
            ))
        else:
            logger.warning("MoMo enabled but credentials are missing; skipping")

    if "zalopay" in enabled:
        if settings.zalopay_app_id and settings.zalopay_key1 and settings.zalopay_key2:
            registry.register(ZaloPayGateway(
                app_id=settings.zalopay_app_id,
                key1=settings.zalopay_key1,
                key2=settings.zalopay_key2,
                endpoint=settings.zalopay_endpoint,
                return_url=settings.payment_return_url,
                callback_url=f"{ipn_base}/zalopay/callback",
                timeout=settings.gateway_timeout_seconds,
            ))
        else:
            logger.warning("ZaloPay enabled but credentials are missing; skipping")

    return registry


@lru_cache()
def get_gateway_registry() -> GatewayRegistry:
    """Process-wide registry built from settings."""
    return build_gateway_registry(get_settings())


async def call_gateway(
    adapter: PaymentGatewayAdapter,
    operation: str,
    request: Any,
    timeout: float = 10.0,
    failure_threshold: int = 5,
    recovery_timeout: int = 60,
) -> Any:
    """
    Invoke ``initiate`` or ``refund`` on an adapter through its circuit breaker.

    Raises:
        GatewayUnavailableError: While the gateway's circuit is open
        GatewayTimeoutError: When the call exceeds ``timeout``
        GatewayError: For any other gateway failure
    """
    breaker = get_gateway_circuit_breaker(
        adapter.code,
        timeout=timeout,
        failure_threshold=failure_threshold,
        recovery_timeout=recovery_timeout,
    )
    return await breaker.call(getattr(adapter, operation), request)
