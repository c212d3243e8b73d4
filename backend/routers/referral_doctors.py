from datetime import datetime, time
from datetime import date as date_type
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from database import get_session
from models import AuditActionType, Branch, ReferralDoctor, User
from services.access import CATALOG_ADMIN_ROLES, get_branch_context
from services.audit import log_action, request_origin
from services.auth import get_current_user, require_roles
from services.errors import NotFoundError
from services.payouts import derive_referral_payout
from services.sequence import generate_referral_doctor_number

router = APIRouter(prefix="/referral-doctors", tags=["referral-doctors"])

requires_catalog_admin = require_roles(*CATALOG_ADMIN_ROLES)


class ReferralDoctorCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    commission_percent: float = Field(default=0.0, ge=0, le=100)


class ReferralDoctorUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    commission_percent: Optional[float] = Field(default=None, ge=0, le=100)


def _get_doctor(doctor_id: int, session: Session) -> ReferralDoctor:
    doctor = session.get(ReferralDoctor, doctor_id)
    if not doctor:
        raise NotFoundError("Referral doctor not found")
    return doctor


@router.get("")
def list_referral_doctors(
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    include_inactive: bool = Query(False),
):
    query = select(ReferralDoctor)
    if not include_inactive:
        query = query.where(ReferralDoctor.is_active == True)  # noqa: E712
    return session.exec(query.order_by(ReferralDoctor.name.asc())).all()  # type: ignore[union-attr]


@router.post("", status_code=201)
def create_referral_doctor(
    body: ReferralDoctorCreate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_catalog_admin),
    branch: Branch = Depends(get_branch_context),
):
    doctor = ReferralDoctor(
        doctor_number=generate_referral_doctor_number(session.get_bind()),
        name=body.name.strip(),
        phone=body.phone.strip() if body.phone else None,
        email=body.email.strip().lower() if body.email else None,
        commission_percent=body.commission_percent,
    )
    session.add(doctor)
    try:
        session.flush()
        log_action(
            session,
            action_type=AuditActionType.CREATE,
            entity_type="ReferralDoctor",
            entity_id=doctor.id,
            branch_id=branch.id,
            user_id=current_user.id,
            new_values={
                "doctor_number": doctor.doctor_number,
                "name": doctor.name,
                "commission_percent": doctor.commission_percent,
            },
            **request_origin(request),
        )
        session.commit()
        session.refresh(doctor)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to create referral doctor")
    return doctor


@router.patch("/{doctor_id}")
def update_referral_doctor(
    doctor_id: int,
    body: ReferralDoctorUpdate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_catalog_admin),
    branch: Branch = Depends(get_branch_context),
):
    """Commission changes apply to future test orders only."""
    doctor = _get_doctor(doctor_id, session)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(422, "No fields to update")

    old_values = {field: getattr(doctor, field) for field in changes}
    for field, value in changes.items():
        if isinstance(value, str):
            value = value.strip()
            if field == "email":
                value = value.lower()
        setattr(doctor, field, value)
    session.add(doctor)

    try:
        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="ReferralDoctor",
            entity_id=doctor.id,
            branch_id=branch.id,
            user_id=current_user.id,
            old_values=old_values,
            new_values={field: getattr(doctor, field) for field in changes},
            **request_origin(request),
        )
        session.commit()
        session.refresh(doctor)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to update referral doctor")
    return doctor


@router.delete("/{doctor_id}")
def deactivate_referral_doctor(
    doctor_id: int,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_catalog_admin),
    branch: Branch = Depends(get_branch_context),
):
    doctor = _get_doctor(doctor_id, session)
    doctor.is_active = False
    session.add(doctor)
    try:
        log_action(
            session,
            action_type=AuditActionType.DELETE,
            entity_type="ReferralDoctor",
            entity_id=doctor.id,
            branch_id=branch.id,
            user_id=current_user.id,
            old_values={"is_active": True},
            new_values={"is_active": False},
            **request_origin(request),
        )
        session.commit()
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to deactivate referral doctor")
    return {"id": doctor_id, "message": "Referral doctor deactivated"}


@router.get("/{doctor_id}/payout")
def referral_payout(
    doctor_id: int,
    start: date_type = Query(...),
    end: date_type = Query(...),
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_catalog_admin),
    branch: Branch = Depends(get_branch_context),
):
    # Both ends of the period are inclusive calendar days.
    return derive_referral_payout(
        session,
        doctor_id,
        branch.id,
        datetime.combine(start, time.min),
        datetime.combine(end, time.max),
    )
