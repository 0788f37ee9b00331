"""Audit collaborator: append-only structured records.

``record`` is fire-and-forget; ``claim_marker`` doubles as an idempotency
anchor through the unique ``idempotency_key`` column.
"""
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.models.audit import AuditActorType, AuditLog
from billing_engine.services.common import insert_unique

logger = logging.getLogger(__name__)


def _build(
    action: str,
    resource_type: str,
    resource_id: Any,
    actor_id: Any,
    actor_type: AuditActorType,
    reason: str | None,
    before: dict | None,
    after: dict | None,
    metadata: dict | None,
    idempotency_key: str | None,
) -> AuditLog:
    return AuditLog(
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        actor_id=str(actor_id) if actor_id is not None else None,
        actor_type=actor_type,
        reason=reason,
        before=before,
        after=after,
        metadata_=metadata,
        idempotency_key=idempotency_key,
    )


def record(
    db: Session,
    action: str,
    resource_type: str,
    resource_id: Any = None,
    *,
    actor_id: Any = None,
    actor_type: AuditActorType = AuditActorType.system,
    reason: str | None = None,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
) -> None:
    """Append one audit record; failures are logged and never propagated."""
    entry = _build(
        action,
        resource_type,
        resource_id,
        actor_id,
        actor_type,
        reason,
        before,
        after,
        metadata,
        None,
    )
    try:
        with db.begin_nested():
            db.add(entry)
            db.flush()
    except SQLAlchemyError:
        logger.exception("Audit append failed: %s %s", action, resource_type)


def claim_marker(
    db: Session,
    key: str,
    action: str,
    resource_type: str,
    resource_id: Any = None,
    *,
    actor_type: AuditActorType = AuditActorType.system,
    after: dict | None = None,
    metadata: dict | None = None,
) -> AuditLog | None:
    """Insert the audit row keyed by ``key``; None if it already exists."""
    entry = _build(
        action,
        resource_type,
        resource_id,
        None,
        actor_type,
        None,
        None,
        after,
        metadata,
        key,
    )
    if not insert_unique(db, entry):
        return None
    return entry

