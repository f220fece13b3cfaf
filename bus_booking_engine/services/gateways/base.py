"""
Payment gateway adapter contract shared by every provider.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from ...models.payment import PaymentStatus


@dataclass
class PaymentInitiationRequest:
    merchant_order_ref: str
    amount: Decimal
    order_info: str
    expires_at: datetime
    return_url: Optional[str] = None
    client_ip: str = "127.0.0.1"
    locale: Optional[str] = None
    bank_code: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentInitiationResult:
    payment_url: Optional[str] = None
    gateway_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallbackVerification:
    """A callback whose signature checked out, reduced to what settlement needs."""

    merchant_order_ref: str
    status: PaymentStatus
    transaction_no: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundRequest:
    merchant_order_ref: str
    transaction_no: Optional[str]
    amount: Decimal
    total_amount: Decimal
    reason: str
    transaction_date: datetime
    client_ip: str = "127.0.0.1"
    requested_by: str = "system"


@dataclass
class RefundResult:
    success: bool
    refund_reference: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGatewayAdapter(Protocol):
    """
    Capability every payment provider implements.

    ``settles_immediately`` marks offline methods such as cash: orders paid
    with them are confirmed at creation and ``initiate`` is never called.
    ``verify`` must raise CallbackVerificationError for payloads whose
    signature does not match, before anything else looks at them.
    """

    code: str
    settles_immediately: bool

    async def initiate(self, request: PaymentInitiationRequest) -> PaymentInitiationResult:
        ...

    async def verify(self, payload: Mapping[str, Any]) -> CallbackVerification:
        ...

    async def refund(self, request: RefundRequest) -> RefundResult:
        ...


def hmac_hex(secret: str, message: str, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), digestmod).hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8"))
