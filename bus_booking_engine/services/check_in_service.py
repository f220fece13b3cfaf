"""
Boarding check-in by signed token.
"""

import hashlib
import hmac
import logging
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.order import Order
from ..models.order_history import OrderAction
from ..models.ticket import TicketStatus
from .order_records import add_order_history, load_order, set_ticket_status
from ..utils.exceptions import InvalidTokenError
from ..utils.logging_config import log_security_event

logger = logging.getLogger(__name__)


class CheckInService:
    """Issues check-in tokens and checks confirmed tickets in."""

    def __init__(self, session: Optional[AsyncSession], secret: str):
        if not secret:
            raise ValueError("check-in secret must not be empty")
        self.session = session
        self._secret = secret.encode("utf-8")

    def issue_token(self, order_id: Union[str, UUID]) -> str:
        """HMAC-SHA256 of the order id, hex encoded."""
        return hmac.new(self._secret, str(order_id).encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_token(self, order_id: Union[str, UUID], token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(self.issue_token(order_id).encode("utf-8"), token.encode("utf-8"))

    async def check_in(self, order_id: UUID, token: str) -> Order:
        """
        Check in every CONFIRMED ticket of an order.

        Tickets already checked in, refunded or cancelled are left alone, so
        repeating a check-in is harmless.

        Raises:
            InvalidTokenError: Token does not match the order
            OrderNotFoundError: Unknown order
        """
        if not self.verify_token(order_id, token):
            log_security_event("check_in_token_rejected", {"order_id": str(order_id)})
            raise InvalidTokenError()

        try:
            order = await load_order(self.session, order_id, for_update=True)
            checked_in = await set_ticket_status(
                self.session, order.id, TicketStatus.CONFIRMED, TicketStatus.CHECKED_IN
            )
            if checked_in:
                add_order_history(
                    self.session,
                    order.id,
                    OrderAction.CHECKED_IN,
                    f"{checked_in} tickets checked in",
                    performed_by="check_in",
                )
                await self.session.flush()
                order = await load_order(self.session, order_id)
            else:
                logger.info(f"Check-in for order {order_id}: no confirmed tickets")
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        return order
