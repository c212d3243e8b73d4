from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlmodel import Session, func, select

from database import get_session
from models import (
    Branch,
    Patient,
    PaymentStatus,
    PaymentType,
    TestResult,
    User,
    Visit,
    VisitDomain,
    VisitStatus,
)
from services.access import get_branch_context
from services.audit import request_origin
from services.auth import get_current_user
from services.diagnostics import (
    add_tests,
    bill_for_visit,
    create_diagnostic_visit,
    orders_for_visit,
    remove_test,
    resolve_tests,
    save_results,
    update_visit,
)
from services.errors import NotFoundError
from services.report_lifecycle import finalize_visit_report, report_for_visit, versions_for_report

router = APIRouter(prefix="/visits/diagnostic", tags=["diagnostic-visits"])


class VisitCreate(BaseModel):
    patient_id: int
    test_ids: list[int]
    referral_doctor_id: Optional[int] = None
    payment_type: PaymentType = PaymentType.CASH
    payment_status: PaymentStatus = PaymentStatus.PENDING


class VisitUpdate(BaseModel):
    status: Optional[VisitStatus] = None
    payment_type: Optional[PaymentType] = None
    payment_status: Optional[PaymentStatus] = None


class AddTestsRequest(BaseModel):
    test_ids: list[int]


class ResultEntry(BaseModel):
    test_id: int
    value: Optional[float] = None
    flag: Optional[str] = Field(default=None, max_length=16)
    notes: Optional[str] = Field(default=None, max_length=1000)


class SaveResultsRequest(BaseModel):
    results: list[ResultEntry] = Field(min_length=1)


def _get_branch_visit(visit_id: int, branch: Branch, session: Session) -> Visit:
    visit = session.get(Visit, visit_id)
    # Visits of other branches are reported as missing.
    if not visit or visit.branch_id != branch.id or visit.domain != VisitDomain.DIAGNOSTICS:
        raise NotFoundError("Visit not found")
    return visit


def visit_summary(visit: Visit, patient: Patient | None) -> dict:
    return {
        "id": visit.id,
        "branch_id": visit.branch_id,
        "bill_number": visit.bill_number,
        "status": visit.status.value,
        "total_amount_in_paise": visit.total_amount_in_paise,
        "patient": {
            "id": patient.id,
            "name": patient.name,
            "patient_number": patient.patient_number,
        }
        if patient
        else None,
        "referral_doctor_id": visit.referral_doctor_id,
        "created_at": visit.created_at,
        "updated_at": visit.updated_at,
    }


def visit_detail(visit: Visit, session: Session) -> dict:
    data = visit_summary(visit, session.get(Patient, visit.patient_id))

    bill = bill_for_visit(session, visit.id)
    data["payment_type"] = bill.payment_type.value if bill else None
    data["payment_status"] = bill.payment_status.value if bill else None

    report = report_for_visit(session, visit.id)
    versions = versions_for_report(session, report.id) if report else []
    current = versions[0] if versions else None

    results_by_order: dict[int, TestResult] = {}
    if current is not None:
        rows = session.exec(select(TestResult).where(TestResult.report_version_id == current.id)).all()
        results_by_order = {row.test_order_id: row for row in rows}

    data["test_orders"] = []
    for order in orders_for_visit(session, visit.id):
        result = results_by_order.get(order.id)
        data["test_orders"].append(
            {
                "id": order.id,
                "test_id": order.test_id,
                "test_name": order.test_name,
                "test_code": order.test_code,
                "price_in_paise": order.price_in_paise,
                "reference_range": {
                    "min": order.reference_min,
                    "max": order.reference_max,
                    "unit": order.reference_unit,
                },
                "result": {"value": result.value, "flag": result.flag, "notes": result.notes}
                if result
                else None,
            }
        )

    data["report"] = {
        "id": report.id if report else None,
        "status": current.status.value if current else None,
        "versions": [
            {
                "id": version.id,
                "version_num": version.version_num,
                "status": version.status.value,
                "finalized_at": version.finalized_at,
                "finalized_by": version.finalized_by,
            }
            for version in versions
        ],
    }
    return data


@router.get("")
def list_visits(
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
    patient_id: Optional[int] = Query(None),
    status: Optional[VisitStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
):
    query = select(Visit).where(Visit.branch_id == branch.id, Visit.domain == VisitDomain.DIAGNOSTICS)
    if patient_id is not None:
        query = query.where(Visit.patient_id == patient_id)
    if status is not None:
        query = query.where(Visit.status == status)

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    visits = session.exec(
        query.order_by(Visit.created_at.desc(), Visit.id.desc())  # type: ignore[union-attr]
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {
        "visits": [visit_summary(visit, session.get(Patient, visit.patient_id)) for visit in visits],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.post("", status_code=201)
def create_visit(
    body: VisitCreate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    tests = resolve_tests(session, body.test_ids)
    visit = create_diagnostic_visit(
        session,
        branch=branch,
        patient_id=body.patient_id,
        tests=tests,
        referral_doctor_id=body.referral_doctor_id,
        payment_type=body.payment_type,
        payment_status=body.payment_status,
        actor_id=current_user.id,
        **request_origin(request),
    )
    return visit_detail(visit, session)


@router.get("/{visit_id}")
def get_visit(
    visit_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    return visit_detail(_get_branch_visit(visit_id, branch, session), session)


@router.patch("/{visit_id}")
def patch_visit(
    visit_id: int,
    body: VisitUpdate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    visit = _get_branch_visit(visit_id, branch, session)
    visit = update_visit(
        session,
        visit,
        status=body.status,
        payment_type=body.payment_type,
        payment_status=body.payment_status,
        actor_id=current_user.id,
        **request_origin(request),
    )
    return visit_detail(visit, session)


@router.post("/{visit_id}/tests", status_code=201)
def add_visit_tests(
    visit_id: int,
    body: AddTestsRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    visit = _get_branch_visit(visit_id, branch, session)
    added = add_tests(session, visit, body.test_ids, actor_id=current_user.id, **request_origin(request))
    return {
        "added_test_order_ids": [order.id for order in added],
        "total_amount_in_paise": visit.total_amount_in_paise,
        "visit": visit_detail(visit, session),
    }


@router.delete("/{visit_id}/tests/{test_order_id}")
def remove_visit_test(
    visit_id: int,
    test_order_id: int,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    visit = _get_branch_visit(visit_id, branch, session)
    new_total = remove_test(session, visit, test_order_id, actor_id=current_user.id, **request_origin(request))
    return {
        "message": "Test removed",
        "total_amount_in_paise": new_total,
        "visit": visit_detail(visit, session),
    }


@router.post("/{visit_id}/results")
def save_visit_results(
    visit_id: int,
    body: SaveResultsRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    visit = _get_branch_visit(visit_id, branch, session)
    saved = save_results(
        session,
        visit,
        [entry.model_dump() for entry in body.results],
        actor_id=current_user.id,
        **request_origin(request),
    )
    return {"saved": len(saved), "visit": visit_detail(visit, session)}


@router.post("/{visit_id}/finalize")
def finalize_visit(
    visit_id: int,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    visit = _get_branch_visit(visit_id, branch, session)
    version = finalize_visit_report(session, visit, actor_id=current_user.id, **request_origin(request))
    session.refresh(visit)
    return {
        "report_version_id": version.id,
        "status": version.status.value,
        "finalized_at": version.finalized_at,
        "visit": visit_detail(visit, session),
    }
