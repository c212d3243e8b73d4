from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from database import get_session
from models import Branch, User, UserBranch, UserRole
from services.access import accessible_branch_ids
from services.auth import (
    authenticate_user,
    create_access_token,
    get_current_user,
    hash_password,
    require_roles,
    user_payload,
)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=8, max_length=256)
    role: UserRole
    branch_ids: list[int] = Field(default_factory=list)


def _payload_with_branches(user: User, session: Session) -> dict:
    data = user_payload(user)
    branch_ids = accessible_branch_ids(user, session)
    data["branch_ids"] = None if branch_ids is None else sorted(branch_ids)
    return data


@router.post("/register", status_code=201)
def register(
    body: RegisterRequest,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.OWNER, UserRole.ADMIN)),
):
    name = body.name.strip()
    email = body.email.strip().lower()
    if not name:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Name cannot be empty")
    if body.role == UserRole.OWNER and current_user.role != UserRole.OWNER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only owners can create owners")

    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    branch_ids = sorted(set(body.branch_ids))
    if branch_ids:
        found = session.exec(select(Branch.id).where(Branch.id.in_(branch_ids))).all()  # type: ignore[union-attr]
        if len(found) != len(branch_ids):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Unknown branch id")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
    )
    session.add(user)
    try:
        session.flush()
        for branch_id in branch_ids:
            session.add(UserBranch(user_id=user.id, branch_id=branch_id))
        session.commit()
        session.refresh(user)
    except Exception:
        session.rollback()
        raise HTTPException(status_code=500, detail="Failed to register user")

    return _payload_with_branches(user, session)


@router.post("/login")
def login(body: LoginRequest, session: Session = Depends(get_session)):
    email = body.email.strip().lower()
    user = authenticate_user(email, body.password, session)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    return {
        "access_token": create_access_token(user),
        "token_type": "bearer",
        "user": _payload_with_branches(user, session),
    }


@router.get("/me")
def me(current_user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    return _payload_with_branches(current_user, session)
