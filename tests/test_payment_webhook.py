"""Tests for payment notification ingestion."""

import asyncio
import threading
from decimal import Decimal

import pytest
from sqlalchemy import text

from app.core.context import caller_context
from app.core.errors import GatewayError, PrivilegeError
from app.services.enrollments import find_enrollment
from app.services.ledger import get_payment_records
from app.services.payment_webhook import process_payment_notification

from conftest import add_order, count_rows, order_status


def deliver(ctx, gateway, event_type="payment", tx="1001", **kw):
    return asyncio.run(process_payment_notification(ctx, gateway, event_type, tx, **kw))


class TestApprovedPayment:
    def test_marks_order_paid_and_records_payment(self, db, ctx, gateway):
        add_order(db, "O1")
        gateway.approve("1001", "O1", amount=Decimal("120.00"))

        outcome = deliver(ctx, gateway)

        assert outcome.result == "applied"
        assert outcome.order_id == "O1"
        assert order_status(db, "O1") == "paid"
        records = get_payment_records(ctx, "O1")
        assert len(records) == 1
        assert records[0]["transaction_id"] == "1001"
        assert records[0]["amount"] == Decimal("120.00")
        assert records[0]["amount_cents"] == 12000
        assert records[0]["status"] == "paid"

    def test_redelivery_is_idempotent(self, db, ctx, gateway, caplog):
        add_order(db, "O1")
        gateway.approve("1001", "O1")

        with caplog.at_level("INFO", logger="app.ledger"):
            results = [deliver(ctx, gateway).result for _ in range(5)]

        assert results == ["applied"] + ["already_applied"] * 4
        assert order_status(db, "O1") == "paid"
        assert count_rows(db, "payment_records", order_id="O1", transaction_id="1001") == 1
        transitions = [r for r in caplog.records if "pending -> paid" in r.getMessage()]
        assert len(transitions) == 1
        # the provider is asked every time
        assert gateway.calls == ["1001"] * 5

    def test_second_delivery_on_another_session(self, session_factory, db, gateway):
        from app.core.context import privileged_context

        add_order(db, "O1")
        gateway.approve("1001", "O1")

        outcomes = []
        for worker in ("worker-1", "worker-2"):
            s = session_factory()
            try:
                outcomes.append(deliver(privileged_context(s, worker), gateway).result)
            finally:
                s.close()

        assert outcomes == ["applied", "already_applied"]
        assert count_rows(db, "payment_records") == 1

    def test_concurrent_deliveries_converge(self, session_factory, db, gateway):
        from app.core.context import privileged_context

        add_order(db, "O1")
        gateway.approve("1001", "O1")

        barrier = threading.Barrier(2)
        results, errors = [], []

        def worker(name):
            s = session_factory()
            try:
                barrier.wait(timeout=10)
                results.append(deliver(privileged_context(s, name), gateway).result)
            except Exception as e:
                errors.append(e)
            finally:
                s.close()

        threads = [threading.Thread(target=worker, args=(f"worker-{i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(results) == ["already_applied", "applied"]
        assert order_status(db, "O1") == "paid"
        assert count_rows(db, "payment_records", order_id="O1", transaction_id="1001") == 1
        assert count_rows(db, "enrollments") == 1

    def test_order_already_shipped_keeps_status(self, db, ctx, gateway):
        add_order(db, "O1", status="shipped")
        gateway.approve("1001", "O1")

        outcome = deliver(ctx, gateway)

        assert outcome.result == "applied"
        assert order_status(db, "O1") == "shipped"
        assert count_rows(db, "payment_records", order_id="O1") == 1

    def test_enrolls_student_right_away(self, db, ctx, gateway):
        add_order(db, "O1", student_id="S1", course_id="C1")
        gateway.approve("1001", "O1")

        outcome = deliver(ctx, gateway)

        assert outcome.enrollment == "fixed"
        enrollment = find_enrollment(ctx, "S1", "C1")
        assert enrollment.source == "payment-webhook"
        assert enrollment.source_order_id == "O1"

        again = deliver(ctx, gateway)
        assert again.enrollment == "already_enrolled"
        assert count_rows(db, "enrollments") == 1

    def test_immediate_enrollment_can_be_disabled(self, db, ctx, gateway):
        add_order(db, "O1")
        gateway.approve("1001", "O1")

        outcome = deliver(ctx, gateway, enroll_on_payment=False)

        assert outcome.enrollment is None
        assert order_status(db, "O1") == "paid"
        assert count_rows(db, "enrollments") == 0


class TestUntrustedInput:
    def test_forged_approval_does_not_change_order(self, db, ctx, gateway):
        add_order(db, "O1")
        # the notification claims success, the provider says otherwise
        gateway.set_status("1001", "rejected", order_id="O1")

        outcome = deliver(ctx, gateway)

        assert outcome.result == "not_approved"
        assert outcome.payment_status == "rejected"
        assert order_status(db, "O1") == "pending"
        assert count_rows(db, "payment_records") == 0

    @pytest.mark.parametrize("status", ["pending", "in_process", "refunded", "cancelled"])
    def test_other_statuses_are_no_ops(self, db, ctx, gateway, status):
        add_order(db, "O1")
        gateway.set_status("1001", status, order_id="O1")

        assert deliver(ctx, gateway).result == "not_approved"
        assert order_status(db, "O1") == "pending"

    @pytest.mark.parametrize(
        "event_type,tx",
        [("merchant_order", "1001"), (None, "1001"), ("payment", None), ("payment", "  ")],
    )
    def test_irrelevant_notifications_are_ignored(self, db, ctx, gateway, event_type, tx):
        add_order(db, "O1")
        gateway.approve("1001", "O1")

        outcome = deliver(ctx, gateway, event_type=event_type, tx=tx)

        assert outcome.result == "ignored"
        assert gateway.calls == []
        assert order_status(db, "O1") == "pending"

    @pytest.mark.parametrize(
        "tx",
        ["123?access_token=x", "../../v1/merchant_orders/9", "T1", "12 34", "١٢٣"],
    )
    def test_malformed_payment_id_never_reaches_gateway(self, db, ctx, gateway, tx, caplog):
        add_order(db, "O1")

        with caplog.at_level("WARNING", logger="app.payment_webhook"):
            outcome = deliver(ctx, gateway, tx=tx)

        assert outcome.result == "ignored"
        assert gateway.calls == []
        assert order_status(db, "O1") == "pending"
        assert count_rows(db, "payment_webhook_health") == 0
        assert any("malformed payment id" in r.getMessage() for r in caplog.records)

    def test_approved_without_reference(self, db, ctx, gateway, caplog):
        add_order(db, "O1")
        gateway.set_status("1001", "approved", order_id=None)

        with caplog.at_level("WARNING", logger="app.payment_webhook"):
            outcome = deliver(ctx, gateway)

        assert outcome.result == "unassociated"
        assert order_status(db, "O1") == "pending"
        assert count_rows(db, "payment_records") == 0
        assert any("external_reference" in r.getMessage() for r in caplog.records)


class TestFailures:
    def test_gateway_failure_propagates_and_writes_nothing(self, db, ctx, gateway):
        add_order(db, "O1")
        gateway.approve("1001", "O1")
        gateway.error = GatewayError("timeout", retryable=True)

        with pytest.raises(GatewayError) as exc_info:
            deliver(ctx, gateway)

        assert exc_info.value.retryable is True
        assert order_status(db, "O1") == "pending"
        assert count_rows(db, "payment_records") == 0

    def test_unknown_order_is_logged_not_raised(self, db, ctx, gateway, caplog):
        gateway.approve("1001", "ghost")

        with caplog.at_level("ERROR", logger="app.payment_webhook"):
            outcome = deliver(ctx, gateway)

        assert outcome.result == "error"
        assert count_rows(db, "payment_records") == 0
        errors = [r.getMessage() for r in caplog.records if r.levelname == "ERROR"]
        assert any("order=ghost" in m and "tx=1001" in m for m in errors)

    def test_conflicting_order_status_rolls_back(self, db, ctx, gateway):
        add_order(db, "O1", status="cancelled")
        gateway.approve("1001", "O1")

        outcome = deliver(ctx, gateway)

        assert outcome.result == "error"
        assert order_status(db, "O1") == "cancelled"
        assert count_rows(db, "payment_records") == 0

    def test_requires_privileged_context(self, db, gateway):
        with pytest.raises(PrivilegeError):
            deliver(caller_context(db, {"user_id": 1, "role": "admin"}), gateway)


def test_verification_updates_webhook_health(db, ctx, gateway):
    add_order(db, "O1")
    gateway.set_status("1009", "rejected", order_id="O1")

    deliver(ctx, gateway, tx="1009")

    row = db.execute(
        text("select last_transaction_id, last_status, last_event_type from payment_webhook_health where provider = 'mercado_pago'")
    ).fetchone()
    assert tuple(row) == ("1009", "rejected", "payment")
