# app/api/routes/payment_webhooks.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.context import privileged_context
from app.core.db import get_db
from app.core.errors import GatewayError
from app.services.mercadopago import MercadoPagoClient
from app.services.payment_webhook import process_payment_notification

router = APIRouter()

logger = logging.getLogger("app.payment_webhook")

# Mercado Pago retries anything that is not 2xx, so every path answers with this.
ACK = {"received": True}


def get_payment_gateway() -> MercadoPagoClient | None:
    try:
        return MercadoPagoClient.from_env()
    except RuntimeError as e:
        logger.error("payment gateway not configured: %s", str(e))
        return None


@router.post("/webhooks/mercado-pago")
async def mercado_pago_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: MercadoPagoClient | None = Depends(get_payment_gateway),
):
    # identity comes from the query string only; the body is never read
    params = request.query_params
    event_type = params.get("type") or params.get("topic")
    transaction_id = params.get("data.id") or params.get("id")

    if gateway is None:
        logger.error("dropping notification type=%r id=%r: no gateway", event_type, transaction_id)
        return ACK

    ctx = privileged_context(db, actor="payment-webhook")

    try:
        outcome = await process_payment_notification(ctx, gateway, event_type, transaction_id)
        logger.info(
            "notification id=%s result=%s order=%s enrollment=%s",
            transaction_id, outcome.result, outcome.order_id, outcome.enrollment,
        )
    except GatewayError as e:
        logger.error(
            "payment verification failed tx=%s retryable=%s status=%s: %s",
            transaction_id, e.retryable, e.status_code, str(e),
        )
    except Exception:
        db.rollback()
        logger.exception("unexpected webhook failure tx=%s", transaction_id)

    return ACK
