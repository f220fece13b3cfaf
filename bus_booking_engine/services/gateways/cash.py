"""Cash collected at the counter: settled when the order is created."""

import logging
from typing import Any, Mapping

from .base import (
    CallbackVerification,
    PaymentInitiationRequest,
    PaymentInitiationResult,
    RefundRequest,
    RefundResult,
)
from ...utils.exceptions import CallbackVerificationError

logger = logging.getLogger(__name__)


class CashGateway:
    code = "cash"
    settles_immediately = True

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        return PaymentInitiationResult(gateway_reference=request.merchant_order_ref)

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        raise CallbackVerificationError(self.code, "cash payments have no gateway callbacks")

    async def refund(self, request: RefundRequest) -> RefundResult:
        # Money goes back over the counter
        logger.info(f"Cash refund of {request.amount} recorded for {request.merchant_order_ref}")
        return RefundResult(success=True, message="refund handed out in cash")
