import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlmodel import Session, func, select

from database import get_session
from models import AuditActionType, Branch, Patient, PatientChangeLog, PatientChangeType, User, UserRole, Visit
from services.access import get_branch_context
from services.audit import log_action, request_origin
from services.auth import get_current_user
from services.errors import ValidationError
from services.sequence import generate_patient_number

router = APIRouter(prefix="/patients", tags=["patients"])

IDENTITY_FIELDS = ("name", "age", "gender", "phone", "email")


class PatientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    age: int = Field(ge=0, le=130)
    gender: str = Field(min_length=1, max_length=32)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    address: Optional[str] = Field(default=None, max_length=500)


class PatientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    age: Optional[int] = Field(default=None, ge=0, le=130)
    gender: Optional[str] = Field(default=None, min_length=1, max_length=32)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    address: Optional[str] = Field(default=None, max_length=500)
    change_reason: Optional[str] = Field(default=None, max_length=500)


def _get_patient(patient_id: int, session: Session) -> Patient:
    patient = session.get(Patient, patient_id)
    if not patient:
        raise HTTPException(404, "Patient not found")
    return patient


@router.post("", status_code=201)
def create_patient(
    body: PatientCreate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    name = body.name.strip()
    gender = body.gender.strip()
    if not name:
        raise HTTPException(422, "Patient name cannot be empty")
    if not gender:
        raise HTTPException(422, "Gender cannot be empty")

    patient = Patient(
        patient_number=generate_patient_number(session.get_bind()),
        name=name,
        age=body.age,
        gender=gender,
        phone=body.phone.strip() if body.phone else None,
        email=body.email.strip().lower() if body.email else None,
        address=body.address,
    )
    session.add(patient)
    try:
        session.flush()
        log_action(
            session,
            action_type=AuditActionType.CREATE,
            entity_type="Patient",
            entity_id=patient.id,
            branch_id=branch.id,
            user_id=current_user.id,
            new_values={"patient_number": patient.patient_number, "name": name},
            **request_origin(request),
        )
        session.commit()
        session.refresh(patient)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to create patient")
    return patient


@router.get("")
def list_patients(
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    include_inactive: bool = Query(False),
    search: str = Query("", max_length=120),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
):
    query = select(Patient)
    if not include_inactive:
        query = query.where(Patient.is_active == True)  # noqa: E712
    term = search.strip()
    if term:
        query = query.where(
            or_(
                Patient.name.contains(term),  # type: ignore[union-attr]
                Patient.phone.contains(term),  # type: ignore[union-attr]
                Patient.patient_number == term.upper(),
            )
        )
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    patients = session.exec(
        query.order_by(Patient.created_at.asc())  # type: ignore[union-attr]
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {"patients": patients, "total": total, "page": page, "page_size": page_size}


@router.get("/{patient_id}")
def get_patient(
    patient_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    patient = _get_patient(patient_id, session)
    visits = session.exec(
        select(Visit)
        .where(Visit.patient_id == patient_id)
        .order_by(Visit.created_at.desc())  # type: ignore[union-attr]
    ).all()
    data = patient.model_dump()
    data["visits"] = [
        {
            "id": visit.id,
            "branch_id": visit.branch_id,
            "bill_number": visit.bill_number,
            "status": visit.status.value,
            "total_amount_in_paise": visit.total_amount_in_paise,
            "created_at": visit.created_at,
        }
        for visit in visits
    ]
    return data


@router.patch("/{patient_id}")
def update_patient(
    patient_id: int,
    body: PatientUpdate,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    branch: Branch = Depends(get_branch_context),
):
    """Apply changed fields and record each one in the patient change log.

    Staff must give a reason when an identity field changes.
    """
    patient = _get_patient(patient_id, session)
    changes = body.model_dump(exclude_unset=True, exclude={"change_reason"})
    if not changes:
        raise HTTPException(422, "No fields to update")

    updates = {}
    for field, value in changes.items():
        if isinstance(value, str):
            value = value.strip()
            if field == "email":
                value = value.lower()
            if field in ("name", "gender") and not value:
                raise HTTPException(422, f"Patient {field} cannot be empty")
        if getattr(patient, field) != value:
            updates[field] = value
    if not updates:
        return patient

    reason = body.change_reason.strip() if body.change_reason else None
    identity_fields = [field for field in updates if field in IDENTITY_FIELDS]
    if identity_fields and current_user.role == UserRole.STAFF and not reason:
        raise ValidationError(
            "A change reason is required to change identity fields",
            identity_fields=identity_fields,
        )

    request_id = uuid.uuid4().hex
    old_values = {field: getattr(patient, field) for field in updates}
    for field, value in updates.items():
        session.add(
            PatientChangeLog(
                patient_id=patient.id,
                field_name=field,
                old_value=None if old_values[field] is None else str(old_values[field]),
                new_value=None if value is None else str(value),
                change_type=PatientChangeType.IDENTITY if field in IDENTITY_FIELDS else PatientChangeType.NON_IDENTITY,
                change_reason=reason,
                changed_by=current_user.id,
                changed_role=current_user.role.value,
                request_id=request_id,
            )
        )
        setattr(patient, field, value)
    patient.updated_at = datetime.utcnow()
    session.add(patient)

    try:
        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="Patient",
            entity_id=patient.id,
            branch_id=branch.id,
            user_id=current_user.id,
            old_values=old_values,
            new_values={**updates, "request_id": request_id, "change_reason": reason},
            **request_origin(request),
        )
        session.commit()
        session.refresh(patient)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to update patient")
    return patient


@router.get("/{patient_id}/history")
def patient_change_history(
    patient_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    _get_patient(patient_id, session)
    changes = session.exec(
        select(PatientChangeLog)
        .where(PatientChangeLog.patient_id == patient_id)
        .order_by(PatientChangeLog.created_at.desc(), PatientChangeLog.id.desc())  # type: ignore[union-attr]
    ).all()
    return {"patient_id": patient_id, "changes": changes, "count": len(changes)}
