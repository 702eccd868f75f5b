# app/services/ledger.py
"""
Order ledger and payment record store.

Both are thin wrappers over SQL. The invariants live in the database:
  - the pending -> paid transition is a single conditional UPDATE
  - payment_records has UNIQUE(order_id, transaction_id) and inserts use
    ON CONFLICT DO NOTHING

No function here commits; the caller owns the transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import text, bindparam, DateTime

from app.core.context import StoreContext
from app.core.errors import ConflictError, OrderNotFoundError
from app.models.ledger import ORDER_STATUS_FLOW

logger = logging.getLogger("app.ledger")

STATUS_UPDATED = "updated"
STATUS_NOOP = "noop"

RECORD_CREATED = "created"
RECORD_EXISTS = "exists"


@dataclass(frozen=True)
class OrderRow:
    id: str
    student_id: str
    item_id: Optional[str]
    course_id: str
    price_cents: Optional[int]
    status: str
    created_at: Any

    @property
    def price(self) -> Decimal | None:
        return from_cents(self.price_cents)


def to_cents(amount: Decimal) -> int:
    # Money is stored as integer cents. Avoid float bugs.
    return int((Decimal(str(amount)) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / Decimal("100")).quantize(Decimal("0.01"))


def _to_order(row) -> OrderRow:
    return OrderRow(
        id=str(row[0]),
        student_id=str(row[1]),
        item_id=str(row[2]) if row[2] is not None else None,
        course_id=str(row[3]),
        price_cents=int(row[4]) if row[4] is not None else None,
        status=str(row[5]),
        created_at=row[6],
    )


def status_rank(status: str) -> int:
    try:
        return ORDER_STATUS_FLOW.index(status)
    except ValueError:
        return -1


def get_orders_by_status(ctx: StoreContext, status: str) -> list[OrderRow]:
    rows = ctx.db.execute(
        text(
            """
            select id, student_id, item_id, course_id, price_cents, status, created_at
              from orders
             where status = :st
             order by created_at asc, id asc
            """
        ),
        {"st": str(status)},
    ).fetchall()
    return [_to_order(r) for r in rows or []]


def get_order(ctx: StoreContext, order_id: str) -> OrderRow | None:
    row = ctx.db.execute(
        text(
            """
            select id, student_id, item_id, course_id, price_cents, status, created_at
              from orders
             where id = :oid
             limit 1
            """
        ),
        {"oid": str(order_id)},
    ).fetchone()
    return _to_order(row) if row else None


def set_order_status(ctx: StoreContext, order_id: str, from_status: str, to_status: str) -> str:
    """
    Moves an order from ``from_status`` to ``to_status``.

    Returns "updated" when this call performed the transition and "noop" when the
    order was already in ``to_status``. Any other current status raises
    ConflictError; a missing order raises OrderNotFoundError.
    """
    ctx.require_privileged("set_order_status")

    res = ctx.db.execute(
        text(
            """
            update orders
               set status = :to_st
             where id = :oid
               and status = :from_st
            """
        ),
        {"oid": str(order_id), "from_st": str(from_status), "to_st": str(to_status)},
    )
    if res.rowcount == 1:
        logger.info("order %s: %s -> %s (actor=%s)", order_id, from_status, to_status, ctx.actor)
        return STATUS_UPDATED

    current = ctx.db.execute(
        text("select status from orders where id = :oid limit 1"),
        {"oid": str(order_id)},
    ).fetchone()

    if not current:
        raise OrderNotFoundError(str(order_id))

    if str(current[0]) == str(to_status):
        return STATUS_NOOP

    raise ConflictError(str(order_id), expected=str(from_status), actual=str(current[0]))


def insert_payment_record_if_absent(
    ctx: StoreContext,
    order_id: str,
    transaction_id: str,
    *,
    amount: Decimal | None,
    status: str,
    confirmed_at: datetime | None,
) -> str:
    """Returns "created" or "exists". The unique key is (order_id, transaction_id)."""
    ctx.require_privileged("insert_payment_record_if_absent")

    stmt = text(
        """
        insert into payment_records
            (order_id, transaction_id, amount_cents, status, confirmed_at)
        values
            (:oid, :tx, :amount_cents, :st, :confirmed_at)
        on conflict (order_id, transaction_id)
        do nothing
        returning id
        """
    ).bindparams(bindparam("confirmed_at", type_=DateTime(timezone=True)))

    row = ctx.db.execute(
        stmt,
        {
            "oid": str(order_id),
            "tx": str(transaction_id),
            "amount_cents": to_cents(amount) if amount is not None else None,
            "st": str(status),
            "confirmed_at": confirmed_at,
        },
    ).fetchone()

    if row is None:
        return RECORD_EXISTS

    logger.info("payment record %s created for order %s tx %s", row[0], order_id, transaction_id)
    return RECORD_CREATED


def get_payment_records(ctx: StoreContext, order_id: str) -> list[dict[str, Any]]:
    rows = ctx.db.execute(
        text(
            """
            select id, order_id, transaction_id, amount_cents, status, confirmed_at
              from payment_records
             where order_id = :oid
             order by id asc
            """
        ),
        {"oid": str(order_id)},
    ).fetchall()

    return [
        {
            "id": int(r[0]),
            "order_id": str(r[1]),
            "transaction_id": str(r[2]),
            "amount_cents": int(r[3]) if r[3] is not None else None,
            "amount": from_cents(r[3]),
            "status": str(r[4]),
            "confirmed_at": r[5],
        }
        for r in rows or []
    ]
