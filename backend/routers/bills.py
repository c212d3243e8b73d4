from fastapi import APIRouter, Depends
from sqlmodel import Session

from database import get_session
from models import Branch, Patient, ReferralDoctor, User, Visit
from services.access import get_branch_context
from services.auth import get_current_user
from services.diagnostics import bill_for_visit, orders_for_visit
from services.errors import NotFoundError

router = APIRouter(prefix="/bills", tags=["bills"])


@router.get("/{visit_id}")
def get_bill(
    visit_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    """Print data for a visit's bill.

    Everything is read from the stored bill and order snapshots, so a reprint
    always shows the same number, items and amounts as the first print.
    """
    visit = session.get(Visit, visit_id)
    if not visit or visit.branch_id != branch.id:
        raise NotFoundError("Visit not found")
    bill = bill_for_visit(session, visit.id)
    if bill is None:
        raise NotFoundError("Bill not found")

    patient = session.get(Patient, visit.patient_id)
    doctor = session.get(ReferralDoctor, visit.referral_doctor_id) if visit.referral_doctor_id else None

    return {
        "bill": {
            "id": bill.id,
            "bill_number": bill.bill_number,
            "total_amount_in_paise": bill.total_amount_in_paise,
            "payment_type": bill.payment_type.value,
            "payment_status": bill.payment_status.value,
            "created_at": bill.created_at,
        },
        "visit": {
            "id": visit.id,
            "domain": visit.domain.value,
            "status": visit.status.value,
            "created_at": visit.created_at,
        },
        "patient": {
            "name": patient.name,
            "patient_number": patient.patient_number,
            "age": patient.age,
            "gender": patient.gender,
            "phone": patient.phone,
        }
        if patient
        else None,
        "branch": {"name": branch.name, "code": branch.code, "address": branch.address},
        "referral_doctor": {"name": doctor.name} if doctor else None,
        "items": [
            {
                "id": order.id,
                "name": order.test_name,
                "code": order.test_code,
                "price_in_paise": order.price_in_paise,
            }
            for order in orders_for_visit(session, visit.id)
        ],
    }
