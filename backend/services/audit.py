from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import Request
from sqlmodel import Session

from models import AuditActionType, AuditLog

logger = logging.getLogger("labdesk.audit")


def _dump(values: Optional[dict[str, Any]]) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(values, default=str, sort_keys=True)


def request_origin(request: Request | None) -> dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def log_action(
    session: Session,
    *,
    action_type: AuditActionType,
    entity_type: str,
    entity_id: int | str,
    branch_id: int | None,
    user_id: int | None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    """Add an audit row to the caller's transaction; it commits or rolls back with the change."""
    entry = AuditLog(
        branch_id=branch_id,
        user_id=user_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_values=_dump(old_values),
        new_values=_dump(new_values),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(entry)
    logger.debug("audit %s %s#%s by user %s", action_type.value, entity_type, entity_id, user_id)
    return entry
