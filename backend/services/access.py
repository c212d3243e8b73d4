from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session, select

from database import get_session
from models import Branch, User, UserBranch, UserRole
from services.auth import get_current_user

ALL_BRANCH_ROLES: set[UserRole] = {UserRole.OWNER}
CATALOG_ADMIN_ROLES: tuple[UserRole, ...] = (UserRole.OWNER, UserRole.ADMIN)
PAYOUT_ROLES: tuple[UserRole, ...] = (UserRole.OWNER, UserRole.ADMIN)


def accessible_branch_ids(user: User, session: Session) -> set[int] | None:
    """Branch ids a user may act in; ``None`` means every branch."""
    if user.role in ALL_BRANCH_ROLES:
        return None
    rows = session.exec(select(UserBranch.branch_id).where(UserBranch.user_id == user.id)).all()
    return set(rows)


def can_access_branch(user: User, branch_id: int, session: Session) -> bool:
    allowed = accessible_branch_ids(user, session)
    return allowed is None or branch_id in allowed


def get_branch_context(
    x_branch_id: str | None = Header(default=None, alias="X-Branch-Id"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Branch:
    if x_branch_id is None or not x_branch_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Branch-Id header is required")
    try:
        branch_id = int(x_branch_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Branch-Id header") from exc

    branch = session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Branch not found")
    if not can_access_branch(current_user, branch_id, session):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this branch")
    return branch
