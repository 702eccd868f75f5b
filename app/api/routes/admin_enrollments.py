# app/api/routes/admin_enrollments.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.admin_auth import require_admin
from app.core.context import caller_context, privileged_context
from app.core.db import get_db
from app.schemas.reconciliation import AuditReport, RepairReport
from app.services.reconciliation import sync_enrollments, verify_enrollments

router = APIRouter()


@router.get("/admin/enrollments/verify", response_model=AuditReport)
def verify_enrollments_endpoint(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Read-only: paid orders vs. enrollments."""
    try:
        return verify_enrollments(caller_context(db, admin))
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Verify failed: {type(e).__name__}: {str(e)}")


@router.api_route("/admin/enrollments/sync", methods=["GET", "POST"], response_model=RepairReport)
def sync_enrollments_endpoint(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    timeout_s: Optional[float] = Query(None, gt=0, le=600, description="Stop between orders after this many seconds"),
):
    """
    Creates the enrollments missing for paid orders. Same result for GET and
    POST; running it again finds nothing new to create.
    """
    # repair writes cross into the academic store, so they run as a named privileged actor
    ctx = privileged_context(db, actor=f"reconciliation:{admin.get('email')}")
    try:
        return sync_enrollments(ctx, timeout_s=timeout_s)
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Sync failed: {type(e).__name__}: {str(e)}")
