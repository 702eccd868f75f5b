# app/core/context.py
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.errors import PrivilegeError


@dataclass(frozen=True)
class StoreContext:
    """
    Session plus the privilege it was opened with.

    privileged=True  -> trusted server-side logic (webhook, reconciliation job)
    privileged=False -> caller-scoped, already role-checked request (read only)
    """

    db: Session
    actor: str
    privileged: bool = False
    role: str | None = None

    def require_privileged(self, operation: str) -> None:
        if not self.privileged:
            raise PrivilegeError(operation, self.actor)


def privileged_context(db: Session, actor: str) -> StoreContext:
    return StoreContext(db=db, actor=actor, privileged=True)


def caller_context(db: Session, admin: dict) -> StoreContext:
    return StoreContext(
        db=db,
        actor=f"staff:{admin.get('user_id')}",
        privileged=False,
        role=admin.get("role"),
    )
