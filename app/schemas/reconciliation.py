from decimal import Decimal

from pydantic import BaseModel, Field


class PaidOrderStatus(BaseModel):
    id: str
    student_id: str
    course_id: str
    price: Decimal | None = None
    price_cents: int | None = None
    created_at: str | None = None
    has_enrollment: bool


class AuditReport(BaseModel):
    total_paid_orders: int
    total_enrollments: int
    enrollments_by_status: dict[str, int]
    missing_enrollments: int
    paid_orders: list[PaidOrderStatus] = Field(default_factory=list)


class RepairReport(BaseModel):
    total_paid: int
    fixed: int = 0
    already_enrolled: int = 0
    failed: int = 0
    cancelled: bool = False
    details: list[str] = Field(default_factory=list)
