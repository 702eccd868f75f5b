# app/services/enrollments.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import text, bindparam, DateTime
from sqlalchemy.exc import IntegrityError

from app.core.context import StoreContext
from app.core.errors import DuplicateError
from app.models.ledger import ENROLLMENT_IN_PROGRESS, ENROLLMENT_STATUSES

logger = logging.getLogger("app.enrollments")


@dataclass(frozen=True)
class EnrollmentRow:
    id: int
    student_id: str
    course_id: str
    status: str
    grade: Optional[float]
    started_at: Any
    completed_at: Any
    source: str
    source_order_id: Optional[str]


_COLUMNS = """
    id, student_id, course_id, status, grade,
    started_at, completed_at, source, source_order_id
"""


def _to_enrollment(row) -> EnrollmentRow:
    return EnrollmentRow(
        id=int(row[0]),
        student_id=str(row[1]),
        course_id=str(row[2]),
        status=str(row[3]),
        grade=float(row[4]) if row[4] is not None else None,
        started_at=row[5],
        completed_at=row[6],
        source=str(row[7]),
        source_order_id=str(row[8]) if row[8] is not None else None,
    )


def find_enrollment(ctx: StoreContext, student_id: str, course_id: str) -> EnrollmentRow | None:
    row = ctx.db.execute(
        text(
            f"""
            select {_COLUMNS}
              from enrollments
             where student_id = :s
               and course_id = :c
             limit 1
            """
        ),
        {"s": str(student_id), "c": str(course_id)},
    ).fetchone()
    return _to_enrollment(row) if row else None


def list_enrollments(ctx: StoreContext) -> list[EnrollmentRow]:
    rows = ctx.db.execute(
        text(f"select {_COLUMNS} from enrollments order by id asc")
    ).fetchall()
    return [_to_enrollment(r) for r in rows or []]


def count_enrollments_by_status(ctx: StoreContext) -> dict[str, int]:
    """Every known academic status is present, zero when empty."""
    rows = ctx.db.execute(
        text(
            """
            select status, count(*)
              from enrollments
             group by status
            """
        )
    ).fetchall()

    counts = {s: 0 for s in ENROLLMENT_STATUSES}
    for r in rows or []:
        counts[str(r[0])] = int(r[1])
    return counts


def create_enrollment(
    ctx: StoreContext,
    student_id: str,
    course_id: str,
    *,
    status: str = ENROLLMENT_IN_PROGRESS,
    started_at: datetime | None = None,
    source: str = "enrollment-flow",
    source_order_id: str | None = None,
) -> EnrollmentRow:
    """
    Inserts one enrollment and relies on UNIQUE(student_id, course_id).

    Raises DuplicateError when another writer already holds the pair. On any
    integrity failure the session is rolled back so the caller can keep going;
    on success the caller commits.
    """
    ctx.require_privileged("create_enrollment")

    stmt = text(
        f"""
        insert into enrollments
            (student_id, course_id, status, started_at, source, source_order_id)
        values
            (:s, :c, :st, :started_at, :src, :oid)
        returning {_COLUMNS}
        """
    ).bindparams(bindparam("started_at", type_=DateTime(timezone=True)))

    try:
        row = ctx.db.execute(
            stmt,
            {
                "s": str(student_id),
                "c": str(course_id),
                "st": str(status),
                "started_at": started_at,
                "src": str(source),
                "oid": str(source_order_id) if source_order_id is not None else None,
            },
        ).fetchone()
    except IntegrityError:
        ctx.db.rollback()
        # unique violation vs. some other constraint: look at what is there now
        if find_enrollment(ctx, student_id, course_id) is not None:
            raise DuplicateError(str(student_id), str(course_id))
        raise

    return _to_enrollment(row)
