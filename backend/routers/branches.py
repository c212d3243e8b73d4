from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from database import get_session
from models import Branch, User
from services.access import accessible_branch_ids
from services.auth import get_current_user

router = APIRouter(prefix="/branches", tags=["branches"])


@router.get("")
def list_branches(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    query = select(Branch).where(Branch.is_active == True)  # noqa: E712
    allowed = accessible_branch_ids(current_user, session)
    if allowed is not None:
        query = query.where(Branch.id.in_(sorted(allowed)))  # type: ignore[union-attr]
    return session.exec(query.order_by(Branch.code.asc())).all()  # type: ignore[union-attr]
