from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    Text,
    Numeric,
    Boolean,
    DateTime,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# bigint on postgres, rowid alias on sqlite
_PK = BigInteger().with_variant(Integer, "sqlite")

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"

# forward-only lifecycle
ORDER_STATUS_FLOW = (ORDER_PENDING, ORDER_PAID, ORDER_SHIPPED, ORDER_DELIVERED)

ENROLLMENT_IN_PROGRESS = "in-progress"
ENROLLMENT_APPROVED = "approved"
ENROLLMENT_FAILED = "failed"
ENROLLMENT_AWAITING = "awaiting"

ENROLLMENT_STATUSES = (
    ENROLLMENT_IN_PROGRESS,
    ENROLLMENT_APPROVED,
    ENROLLMENT_FAILED,
    ENROLLMENT_AWAITING,
)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Text, primary_key=True)
    student_id = Column(Text, nullable=False, index=True)
    item_id = Column(Text, nullable=True)
    course_id = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False, default=0)
    status = Column(Text, nullable=False, default=ORDER_PENDING, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("order_id", "transaction_id", name="payment_records_order_id_transaction_id_key"),
    )

    id = Column(_PK, primary_key=True, autoincrement=True)
    order_id = Column(Text, nullable=False)
    transaction_id = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=True)
    status = Column(Text, nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="enrollments_student_id_course_id_key"),
        Index("ix_enrollments_source_order_id", "source_order_id"),
    )

    id = Column(_PK, primary_key=True, autoincrement=True)
    student_id = Column(Text, nullable=False)
    course_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=ENROLLMENT_IN_PROGRESS)
    grade = Column(Numeric(5, 2), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    source = Column(Text, nullable=False, default="enrollment-flow")
    source_order_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StaffUser(Base):
    __tablename__ = "staff_users"

    id = Column(_PK, primary_key=True, autoincrement=True)
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=True)
    role = Column(Text, nullable=False, default="staff")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PaymentWebhookHealth(Base):
    """Last successfully verified notification per provider. No secrets stored."""

    __tablename__ = "payment_webhook_health"

    provider = Column(Text, primary_key=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=False)
    last_event_type = Column(Text, nullable=True)
    last_transaction_id = Column(Text, nullable=True)
    last_status = Column(Text, nullable=True)
