# app/services/reconciliation.py
"""
Order ledger -> enrollment store reconciliation.

verify_enrollments: read-only audit of paid orders vs. enrollments.
sync_enrollments:   creates the missing enrollments, one order at a time.

The ledger is the source of truth. Each repair is committed on its own and is
guarded by UNIQUE(student_id, course_id), so runs can overlap with each other
and with the regular enrollment flow.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.core.context import StoreContext
from app.core.errors import DuplicateError
from app.models.ledger import ORDER_PAID, ENROLLMENT_IN_PROGRESS
from app.schemas.reconciliation import AuditReport, PaidOrderStatus, RepairReport
from app.services.enrollments import (
    count_enrollments_by_status,
    create_enrollment,
    find_enrollment,
    list_enrollments,
)
from app.services.ledger import OrderRow, get_orders_by_status

logger = logging.getLogger("app.reconciliation")

OUTCOME_FIXED = "fixed"
OUTCOME_ALREADY_ENROLLED = "already_enrolled"

SOURCE_RECONCILIATION = "reconciliation"
SOURCE_PAYMENT_WEBHOOK = "payment-webhook"


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def enroll_order_if_missing(ctx: StoreContext, order: OrderRow, *, source: str = SOURCE_RECONCILIATION) -> str:
    """
    Create-if-absent for the order's (student, course) pair. Commits on success.

    Returns "fixed" when this call created the enrollment, "already_enrolled"
    when it existed (including losing a concurrent insert). Other errors are
    rolled back and re-raised.
    """
    if find_enrollment(ctx, order.student_id, order.course_id) is not None:
        return OUTCOME_ALREADY_ENROLLED

    try:
        create_enrollment(
            ctx,
            order.student_id,
            order.course_id,
            status=ENROLLMENT_IN_PROGRESS,
            started_at=datetime.now(timezone.utc),
            source=source,
            source_order_id=order.id,
        )
        ctx.db.commit()
    except DuplicateError:
        logger.info(
            "enrollment for student %s course %s created concurrently (order %s)",
            order.student_id, order.course_id, order.id,
        )
        return OUTCOME_ALREADY_ENROLLED
    except Exception:
        ctx.db.rollback()
        raise

    logger.warning(
        "repair: enrolled student %s in course %s (order %s, source=%s, actor=%s)",
        order.student_id, order.course_id, order.id, source, ctx.actor,
    )
    return OUTCOME_FIXED


def _first_order_per_pair(orders: list[OrderRow]) -> dict[tuple[str, str], OrderRow]:
    out: dict[tuple[str, str], OrderRow] = {}
    for o in orders:
        out.setdefault((o.student_id, o.course_id), o)
    return out


def verify_enrollments(ctx: StoreContext) -> AuditReport:
    paid = get_orders_by_status(ctx, ORDER_PAID)
    enrollments = list_enrollments(ctx)
    by_status = count_enrollments_by_status(ctx)

    enrolled_pairs = {(e.student_id, e.course_id) for e in enrollments}

    paid_orders = [
        PaidOrderStatus(
            id=o.id,
            student_id=o.student_id,
            course_id=o.course_id,
            price=o.price,
            price_cents=o.price_cents,
            created_at=_iso(o.created_at),
            has_enrollment=(o.student_id, o.course_id) in enrolled_pairs,
        )
        for o in paid
    ]

    return AuditReport(
        total_paid_orders=len(paid),
        total_enrollments=len(enrollments),
        enrollments_by_status=by_status,
        missing_enrollments=sum(1 for p in paid_orders if not p.has_enrollment),
        paid_orders=paid_orders,
    )


def sync_enrollments(
    ctx: StoreContext,
    *,
    cancel: Optional[threading.Event] = None,
    timeout_s: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RepairReport:
    ctx.require_privileged("sync_enrollments")

    paid = get_orders_by_status(ctx, ORDER_PAID)
    report = RepairReport(total_paid=len(paid))

    # several paid orders may point at the same (student, course); the oldest one
    # is the triggering order and the pair is tallied once
    pending = list(_first_order_per_pair(paid).values())

    deadline = clock() + float(timeout_s) if timeout_s is not None else None

    for idx, order in enumerate(pending):
        # only between steps; every finished step is already committed
        if cancel is not None and cancel.is_set():
            report.cancelled = True
            report.details.append(f"Cancelled after {idx} of {len(pending)} enrollments checked")
            break
        if deadline is not None and clock() >= deadline:
            report.cancelled = True
            report.details.append(f"Timed out after {idx} of {len(pending)} enrollments checked")
            break

        try:
            outcome = enroll_order_if_missing(ctx, order, source=SOURCE_RECONCILIATION)
        except Exception as e:
            report.failed += 1
            report.details.append(f"Failed to enroll order {order.id}: {type(e).__name__}: {str(e)}")
            logger.error(
                "repair failed for order %s (student %s course %s): %s: %s",
                order.id, order.student_id, order.course_id, type(e).__name__, str(e),
            )
            continue

        if outcome == OUTCOME_FIXED:
            report.fixed += 1
            report.details.append(
                f"Fixed: enrolled student {order.student_id} in course {order.course_id} (order {order.id})"
            )
        else:
            report.already_enrolled += 1

    logger.info(
        "sync finished: total_paid=%s fixed=%s already_enrolled=%s failed=%s cancelled=%s",
        report.total_paid, report.fixed, report.already_enrolled, report.failed, report.cancelled,
    )
    return report
