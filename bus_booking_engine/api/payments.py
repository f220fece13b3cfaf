"""
FastAPI routes receiving payment gateway callbacks.
"""

import json
import logging
from typing import Any, Dict
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request

from ..schemas.common import ErrorResponse
from ..schemas.payment import CallbackResponse
from ..services.settlement_service import SettlementService
from ..utils.dependencies import get_settlement_service
from ..utils.exceptions import ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


async def _callback_payload(request: Request) -> Dict[str, Any]:
    """Merge query parameters with a JSON or urlencoded body."""
    payload: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload

    body = await request.body()
    if not body:
        return payload

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = json.loads(body)
        except ValueError:
            raise ValidationError("Callback body is not valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("Callback body must be a JSON object")
        payload.update(data)
    else:
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Callback body is not valid UTF-8")
        payload.update(parse_qsl(text, keep_blank_values=True))
    return payload


@router.api_route(
    "/{method_code}/callback",
    methods=["GET", "POST"],
    response_model=CallbackResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Signature or amount verification failed"},
        404: {"model": ErrorResponse, "description": "Payment reference not found"},
    },
)
async def payment_callback(
    method_code: str,
    request: Request,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """
    Receive a gateway notification or browser return.

    Replays of an already settled payment are acknowledged with
    `replayed: true` and change nothing.
    """
    payload = await _callback_payload(request)
    outcome = await settlement_service.handle_gateway_callback(method_code, payload)

    logger.info(
        f"{method_code} callback for {outcome.merchant_order_ref}: "
        f"payment {outcome.payment_status.value}, order {outcome.order_status.value}"
        f"{' (replay)' if outcome.replayed else ''}"
    )
    return CallbackResponse(
        order_id=outcome.order_id,
        merchant_order_ref=outcome.merchant_order_ref,
        payment_status=outcome.payment_status,
        order_status=outcome.order_status,
        replayed=outcome.replayed,
    )
