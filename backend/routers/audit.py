import json
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, func, select

from database import get_session
from models import AuditActionType, AuditLog, User, UserRole
from services.access import accessible_branch_ids
from services.auth import require_roles

router = APIRouter(tags=["audit"])

requires_audit_access = require_roles(UserRole.OWNER, UserRole.ADMIN)


def _load(raw: str | None):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _entry(row: AuditLog) -> dict:
    return {
        "id": row.id,
        "branch_id": row.branch_id,
        "user_id": row.user_id,
        "action_type": row.action_type.value,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "old_values": _load(row.old_values),
        "new_values": _load(row.new_values),
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "created_at": row.created_at,
    }


@router.get("/audit-logs")
def list_audit_logs(
    branch_id: int | None = Query(default=None),
    entity_type: str = Query(default="", max_length=64),
    entity_id: str = Query(default="", max_length=64),
    action_type: AuditActionType | None = Query(default=None),
    user_id: int | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_audit_access),
):
    query = select(AuditLog)

    allowed = accessible_branch_ids(current_user, session)
    if allowed is not None:
        if branch_id is not None and branch_id not in allowed:
            return {"logs": [], "total": 0, "page": page, "page_size": page_size}
        query = query.where(AuditLog.branch_id.in_(sorted(allowed)))  # type: ignore[union-attr]
    if branch_id is not None:
        query = query.where(AuditLog.branch_id == branch_id)
    if entity_type.strip():
        query = query.where(AuditLog.entity_type == entity_type.strip())
    if entity_id.strip():
        query = query.where(AuditLog.entity_id == entity_id.strip())
    if action_type is not None:
        query = query.where(AuditLog.action_type == action_type)
    if user_id is not None:
        query = query.where(AuditLog.user_id == user_id)
    if start_date is not None:
        query = query.where(AuditLog.created_at >= start_date)
    if end_date is not None:
        query = query.where(AuditLog.created_at <= end_date)

    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())  # type: ignore[union-attr]

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    rows = session.exec(query.offset((page - 1) * page_size).limit(page_size)).all()

    return {
        "logs": [_entry(row) for row in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/audit-logs/{entity_type}/{entity_id}")
def entity_audit_history(
    entity_type: str,
    entity_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_audit_access),
):
    """Every audit row for one entity, oldest first."""
    query = select(AuditLog).where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
    allowed = accessible_branch_ids(current_user, session)
    if allowed is not None:
        query = query.where(AuditLog.branch_id.in_(sorted(allowed)))  # type: ignore[union-attr]
    rows = session.exec(query.order_by(AuditLog.created_at, AuditLog.id)).all()
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "history": [_entry(row) for row in rows],
        "count": len(rows),
    }
