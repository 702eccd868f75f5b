# app/services/payment_webhook.py
"""
Payment notification ingestion.

A notification only tells us *which* payment to look at. The outcome always
comes from the provider API (gateway.get_payment). An approved payment is
applied in one transaction:
  1) orders: pending -> paid (conditional UPDATE, no-op when already paid)
  2) payment_records: insert-if-absent on (order_id, transaction_id)

Redeliveries and concurrent deliveries of the same transaction converge on the
same end state through those two database-level guards.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import text, bindparam, DateTime
from sqlalchemy.exc import SQLAlchemyError

from app.core.context import StoreContext
from app.core.errors import ConflictError, LedgerError
from app.models.ledger import ORDER_PAID, ORDER_PENDING
from app.services.ledger import (
    RECORD_CREATED,
    STATUS_UPDATED,
    get_order,
    insert_payment_record_if_absent,
    set_order_status,
    status_rank,
)
from app.services.mercadopago import VerifiedPayment
from app.services.reconciliation import SOURCE_PAYMENT_WEBHOOK, enroll_order_if_missing

logger = logging.getLogger("app.payment_webhook")

PROVIDER = "mercado_pago"
PAYMENT_EVENT = "payment"
APPROVED = "approved"

ENROLL_ON_PAYMENT = os.getenv("ENROLL_ON_PAYMENT", "true").lower() == "true"

RESULT_IGNORED = "ignored"
RESULT_NOT_APPROVED = "not_approved"
RESULT_UNASSOCIATED = "unassociated"
RESULT_APPLIED = "applied"
RESULT_ALREADY_APPLIED = "already_applied"
RESULT_ERROR = "error"


class PaymentGateway(Protocol):
    async def get_payment(self, payment_id: str) -> VerifiedPayment: ...


@dataclass
class WebhookOutcome:
    result: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    enrollment: Optional[str] = None
    message: Optional[str] = None


def _upsert_webhook_health(ctx: StoreContext, event_type: str, payment: VerifiedPayment) -> None:
    ctx.require_privileged("upsert_webhook_health")
    ctx.db.execute(
        text(
            """
            insert into payment_webhook_health
                (provider, last_verified_at, last_event_type, last_transaction_id, last_status)
            values
                (:p, :ts, :et, :tx, :st)
            on conflict (provider)
            do update set
                last_verified_at = excluded.last_verified_at,
                last_event_type = excluded.last_event_type,
                last_transaction_id = excluded.last_transaction_id,
                last_status = excluded.last_status
            """
        ).bindparams(bindparam("ts", type_=DateTime(timezone=True))),
        {
            "p": PROVIDER,
            "ts": datetime.now(timezone.utc),
            "et": str(event_type),
            "tx": str(payment.id),
            "st": str(payment.status),
        },
    )


def _record_verification(ctx: StoreContext, event_type: str, payment: VerifiedPayment) -> None:
    try:
        _upsert_webhook_health(ctx, event_type, payment)
        ctx.db.commit()
    except SQLAlchemyError as e:
        ctx.db.rollback()
        logger.warning("could not update payment_webhook_health: %s: %s", type(e).__name__, str(e))


def _apply_approved_payment(ctx: StoreContext, order_id: str, payment: VerifiedPayment) -> WebhookOutcome:
    try:
        try:
            transition = set_order_status(ctx, order_id, ORDER_PENDING, ORDER_PAID)
        except ConflictError as e:
            if status_rank(e.actual) <= status_rank(ORDER_PAID):
                raise
            # fulfillment already moved it past paid
            logger.info("order %s already '%s'; status left as is (tx %s)", order_id, e.actual, payment.id)
            transition = None

        record = insert_payment_record_if_absent(
            ctx,
            order_id,
            payment.id,
            amount=payment.amount,
            status=ORDER_PAID,
            confirmed_at=payment.approved_at,
        )
        ctx.db.commit()
    except (LedgerError, SQLAlchemyError) as e:
        ctx.db.rollback()
        logger.error(
            "failed applying approved payment: order=%s tx=%s error=%s: %s",
            order_id, payment.id, type(e).__name__, str(e),
        )
        return WebhookOutcome(
            result=RESULT_ERROR,
            transaction_id=payment.id,
            order_id=order_id,
            payment_status=payment.status,
            message=f"{type(e).__name__}: {str(e)}",
        )

    applied = transition == STATUS_UPDATED or record == RECORD_CREATED
    logger.info(
        "approved payment order=%s tx=%s transition=%s record=%s",
        order_id, payment.id, transition or "past-paid", record,
    )
    return WebhookOutcome(
        result=RESULT_APPLIED if applied else RESULT_ALREADY_APPLIED,
        transaction_id=payment.id,
        order_id=order_id,
        payment_status=payment.status,
    )


def _enroll_after_payment(ctx: StoreContext, order_id: str) -> Optional[str]:
    """Best effort; the reconciliation job picks up anything left behind."""
    try:
        order = get_order(ctx, order_id)
        if not order or status_rank(order.status) < status_rank(ORDER_PAID):
            return None
        return enroll_order_if_missing(ctx, order, source=SOURCE_PAYMENT_WEBHOOK)
    except Exception as e:
        ctx.db.rollback()
        logger.warning(
            "immediate enrollment failed for order %s, left for reconciliation: %s: %s",
            order_id, type(e).__name__, str(e),
        )
        return None


async def process_payment_notification(
    ctx: StoreContext,
    gateway: PaymentGateway,
    event_type: Optional[str],
    transaction_id: Optional[str],
    *,
    enroll_on_payment: bool = ENROLL_ON_PAYMENT,
) -> WebhookOutcome:
    """
    Verifies one notification with the provider and applies it.

    GatewayError propagates (retryable; nothing was written). Persistence
    failures are logged and reported as result="error".
    """
    ctx.require_privileged("process_payment_notification")

    et = (event_type or "").strip().lower()
    tx = (transaction_id or "").strip()

    if et != PAYMENT_EVENT or not tx:
        logger.info("ignoring notification type=%r id=%r", event_type, transaction_id)
        return WebhookOutcome(result=RESULT_IGNORED, transaction_id=tx or None)

    # Mercado Pago payment ids are numeric; anything else never reaches the API.
    if not (tx.isascii() and tx.isdigit()):
        logger.warning("ignoring notification with malformed payment id %r", tx)
        return WebhookOutcome(result=RESULT_IGNORED, transaction_id=None, message="Malformed payment id")

    payment =await gateway.get_payment(tx)
    _record_verification(ctx, et, payment)

    if payment.status != APPROVED:
        logger.info("payment %s verified as '%s'; no changes", tx, payment.status)
        return WebhookOutcome(result=RESULT_NOT_APPROVED, transaction_id=tx, payment_status=payment.status)

    order_id = payment.external_reference
    if not order_id:
        logger.warning("approved payment %s has no external_reference; cannot associate with an order", tx)
        return WebhookOutcome(
            result=RESULT_UNASSOCIATED,
            transaction_id=tx,
            payment_status=payment.status,
            message="Missing external_reference",
        )

    outcome = _apply_approved_payment(ctx, order_id, payment)

    if enroll_on_payment and outcome.result in (RESULT_APPLIED, RESULT_ALREADY_APPLIED):
        outcome.enrollment = _enroll_after_payment(ctx, order_id)

    return outcome
