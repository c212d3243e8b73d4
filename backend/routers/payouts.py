from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlmodel import Session

from database import get_session
from models import Branch, DoctorPayout, PayoutMethod, ReferralDoctor, User, UserRole
from services.access import PAYOUT_ROLES, get_branch_context
from services.audit import request_origin
from services.auth import require_roles
from services.payouts import derive_payout, get_branch_payout, list_payouts, mark_payout_paid, payout_line_items

router = APIRouter(prefix="/payouts", tags=["payouts"])

requires_payout_access = require_roles(*PAYOUT_ROLES)
requires_owner = require_roles(UserRole.OWNER)


class PayoutDeriveRequest(BaseModel):
    referral_doctor_id: int
    period_start: date
    period_end: date


class MarkPaidRequest(BaseModel):
    payment_method: PayoutMethod
    payment_reference_id: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=1000)


def _period(start: date, end: date) -> tuple[datetime, datetime]:
    # Both ends of the period are inclusive calendar days.
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def payout_summary(payout: DoctorPayout, session: Session) -> dict:
    doctor = session.get(ReferralDoctor, payout.referral_doctor_id)
    branch = session.get(Branch, payout.branch_id)
    return {
        "id": payout.id,
        "referral_doctor_id": payout.referral_doctor_id,
        "doctor_name": doctor.name if doctor else None,
        "branch_id": payout.branch_id,
        "branch_name": branch.name if branch else None,
        "period_start": payout.period_start,
        "period_end": payout.period_end,
        "derived_amount_in_paise": payout.derived_amount_in_paise,
        "derived_at": payout.derived_at,
        "is_paid": payout.paid_at is not None,
        "paid_at": payout.paid_at,
        "payment_method": payout.payment_method.value if payout.payment_method else None,
    }


def payout_detail(payout: DoctorPayout, session: Session, line_items: list[dict] | None = None) -> dict:
    data = payout_summary(payout, session)
    data["payment_reference_id"] = payout.payment_reference_id
    data["notes"] = payout.notes
    data["line_items"] = line_items if line_items is not None else payout_line_items(session, payout)
    return data


@router.get("")
def list_branch_payouts(
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_payout_access),
    branch: Branch = Depends(get_branch_context),
    referral_doctor_id: Optional[int] = Query(None),
    is_paid: Optional[bool] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
):
    payouts = list_payouts(
        session,
        branch.id,
        referral_doctor_id=referral_doctor_id,
        is_paid=is_paid,
        start=datetime.combine(start, time.min) if start else None,
        end=datetime.combine(end, time.max) if end else None,
    )
    return {"payouts": [payout_summary(payout, session) for payout in payouts], "count": len(payouts)}


@router.post("/derive")
def derive_branch_payout(
    body: PayoutDeriveRequest,
    request: Request,
    response: Response,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_owner),
    branch: Branch = Depends(get_branch_context),
):
    period_start, period_end = _period(body.period_start, body.period_end)
    payout, derivation, is_new = derive_payout(
        session,
        body.referral_doctor_id,
        branch.id,
        period_start,
        period_end,
        actor_id=current_user.id,
        **request_origin(request),
    )
    response.status_code = 201 if is_new else 200
    return {
        "payout": payout_detail(payout, session, derivation["line_items"]),
        "is_new": is_new,
        "message": "Payout derived" if is_new else "Existing payout found for this period",
    }


@router.get("/{payout_id}")
def get_payout(
    payout_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_payout_access),
    branch: Branch = Depends(get_branch_context),
):
    return payout_detail(get_branch_payout(session, payout_id, branch.id), session)


@router.post("/{payout_id}/mark-paid")
def mark_paid(
    payout_id: int,
    body: MarkPaidRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_payout_access),
    branch: Branch = Depends(get_branch_context),
):
    payout = get_branch_payout(session, payout_id, branch.id)
    payout = mark_payout_paid(
        session,
        payout,
        payment_method=body.payment_method,
        payment_reference_id=body.payment_reference_id.strip() if body.payment_reference_id else None,
        notes=body.notes,
        actor_id=current_user.id,
        **request_origin(request),
    )
    return payout_detail(payout, session)
