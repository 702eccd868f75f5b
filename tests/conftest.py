"""Pytest fixtures for the payment and reconciliation tests."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("ADMIN_JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from jose import jwt

from app.core.admin_security import JWT_ALG, JWT_SECRET
from app.core.context import privileged_context
from app.core.db import get_db, init_db
from app.core.errors import GatewayError
from app.services.mercadopago import VerifiedPayment


class FakeGateway:
    """Stands in for Mercado Pago: answers from a dict keyed by payment id."""

    def __init__(self):
        self.payments: dict[str, VerifiedPayment] = {}
        self.calls: list[str] = []
        self.error: GatewayError | None = None

    def approve(self, payment_id, order_id, amount=Decimal("120.00")):
        self.payments[payment_id] = VerifiedPayment(
            id=payment_id,
            status="approved",
            amount=amount,
            external_reference=order_id,
            approved_at=None,
        )

    def set_status(self, payment_id, status, order_id=None, amount=Decimal("120.00")):
        self.payments[payment_id] = VerifiedPayment(
            id=payment_id,
            status=status,
            amount=amount,
            external_reference=order_id,
            approved_at=None,
        )

    async def get_payment(self, payment_id):
        self.calls.append(payment_id)
        if self.error is not None:
            raise self.error
        if payment_id not in self.payments:
            raise GatewayError(f"unknown payment {payment_id}", retryable=False, status_code=404)
        return self.payments[payment_id]


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ctx(db):
    return privileged_context(db, actor="test")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    from app.main import app
    from app.api.routes.payment_webhooks import get_payment_gateway

    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def add_order(db, order_id, student_id="S1", course_id="C1", status="pending", price_cents=12000):
    db.execute(
        text(
            """
            insert into orders (id, student_id, item_id, course_id, price_cents, status)
            values (:id, :s, :item, :c, :p, :st)
            """
        ),
        {"id": order_id, "s": student_id, "item": f"book-{course_id}", "c": course_id, "p": price_cents, "st": status},
    )
    db.commit()


def add_enrollment(db, student_id, course_id, status="in-progress"):
    db.execute(
        text(
            """
            insert into enrollments (student_id, course_id, status, source)
            values (:s, :c, :st, 'enrollment-flow')
            """
        ),
        {"s": student_id, "c": course_id, "st": status},
    )
    db.commit()


def add_staff(db, email, role, is_active=True):
    row = db.execute(
        text(
            """
            insert into staff_users (email, role, is_active)
            values (:e, :r, :a)
            returning id
            """
        ),
        {"e": email, "r": role, "a": is_active},
    ).fetchone()
    db.commit()
    return int(row[0])


def make_token(user_id, email, role, expires_in=timedelta(hours=1)):
    """Issues a staff token with the payload the login service signs."""
    now = datetime.now(timezone.utc)
    payload = {
        "typ": "staff",
        "uid": int(user_id),
        "email": str(email).lower(),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def staff_token(db,email="admin@school.test", role="admin", is_active=True):
    uid = add_staff(db, email, role, is_active=is_active)
    return make_token(uid, email, role)


def order_status(db, order_id):
    return db.execute(text("select status from orders where id = :id"), {"id": order_id}).scalar()


def count_rows(db, table, **where):
    clause = " and ".join(f"{k} = :{k}" for k in where) or "1 = 1"
    return int(db.execute(text(f"select count(*) from {table} where {clause}"), where).scalar())
