"""Referral commission payouts.

``derive_referral_payout`` computes what a referral doctor is owed for a
period from the commission captured on each test order. ``derive_payout``
freezes that amount in a DoctorPayout ledger row, one per doctor, branch and
period; deriving the same period again returns the stored row. Line items are
recomputed for display, the stored amount is what gets paid. Once
``mark_payout_paid`` has run, the row is frozen (see ``immutability.py`` and
``triggers.py``).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models import (
    AuditActionType,
    DiagnosticReport,
    DoctorPayout,
    Patient,
    PayoutMethod,
    ReferralDoctor,
    ReportStatus,
    ReportVersion,
    TestOrder,
    Visit,
)
from services.audit import log_action
from services.errors import NotFoundError, PayoutPaidError, ValidationError

logger = logging.getLogger("labdesk.payouts")


def commission_in_paise(price_in_paise: int, commission_percent: float) -> int:
    return int(round(price_in_paise * commission_percent / 100))


def derive_referral_payout(
    session: Session,
    referral_doctor_id: int,
    branch_id: int,
    period_start: datetime,
    period_end: datetime,
) -> dict:
    """Commission owed to a referral doctor for reports finalized in a period.

    Each test order uses the commission percentage captured when it was
    ordered, so later changes to the doctor's rate do not rewrite history.
    """
    if period_end < period_start:
        raise ValidationError("Period end must not be before period start")

    doctor = session.get(ReferralDoctor, referral_doctor_id)
    if not doctor:
        raise NotFoundError("Referral doctor not found")

    rows = session.exec(
        select(Visit, ReportVersion)
        .join(DiagnosticReport, DiagnosticReport.visit_id == Visit.id)
        .join(ReportVersion, ReportVersion.report_id == DiagnosticReport.id)
        .where(
            Visit.branch_id == branch_id,
            Visit.referral_doctor_id == referral_doctor_id,
            ReportVersion.status == ReportStatus.FINALIZED,
            ReportVersion.finalized_at >= period_start,  # type: ignore[operator]
            ReportVersion.finalized_at <= period_end,  # type: ignore[operator]
        )
        .order_by(ReportVersion.finalized_at.asc())  # type: ignore[union-attr]
    ).all()

    line_items = []
    total = 0
    seen_visits: set[int] = set()
    for visit, version in rows:
        if visit.id in seen_visits:
            continue
        seen_visits.add(visit.id)
        patient = session.get(Patient, visit.patient_id)
        orders = session.exec(
            select(TestOrder).where(TestOrder.visit_id == visit.id).order_by(TestOrder.id.asc())  # type: ignore[union-attr]
        ).all()
        for order in orders:
            commission = commission_in_paise(order.price_in_paise, order.referral_commission_percent)
            total += commission
            line_items.append(
                {
                    "visit_id": visit.id,
                    "bill_number": visit.bill_number,
                    "patient_name": patient.name if patient else None,
                    "date": version.finalized_at,
                    "test_name": order.test_name,
                    "amount_in_paise": order.price_in_paise,
                    "commission_percent": order.referral_commission_percent,
                    "derived_commission_in_paise": commission,
                }
            )

    return {
        "referral_doctor_id": doctor.id,
        "doctor_name": doctor.name,
        "branch_id": branch_id,
        "period_start": period_start,
        "period_end": period_end,
        "line_items": line_items,
        "derived_amount_in_paise": total,
    }


def _ledger_row(
    session: Session,
    referral_doctor_id: int,
    branch_id: int,
    period_start: datetime,
    period_end: datetime,
) -> DoctorPayout | None:
    return session.exec(
        select(DoctorPayout).where(
            DoctorPayout.referral_doctor_id == referral_doctor_id,
            DoctorPayout.branch_id == branch_id,
            DoctorPayout.period_start == period_start,
            DoctorPayout.period_end == period_end,
        )
    ).first()


def derive_payout(
    session: Session,
    referral_doctor_id: int,
    branch_id: int,
    period_start: datetime,
    period_end: datetime,
    *,
    actor_id: int | None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> tuple[DoctorPayout, dict, bool]:
    """Return ``(ledger row, derivation, is_new)`` for a doctor, branch and period."""
    derivation = derive_referral_payout(session, referral_doctor_id, branch_id, period_start, period_end)

    existing = _ledger_row(session, referral_doctor_id, branch_id, period_start, period_end)
    if existing is not None:
        return existing, derivation, False

    payout = DoctorPayout(
        referral_doctor_id=referral_doctor_id,
        branch_id=branch_id,
        period_start=period_start,
        period_end=period_end,
        derived_amount_in_paise=derivation["derived_amount_in_paise"],
        derived_by=actor_id,
    )
    try:
        session.add(payout)
        session.flush()
        log_action(
            session,
            action_type=AuditActionType.PAYOUT_DERIVE,
            entity_type="Payout",
            entity_id=payout.id,
            branch_id=branch_id,
            user_id=actor_id,
            new_values={
                "referral_doctor_id": referral_doctor_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "derived_amount_in_paise": payout.derived_amount_in_paise,
                "line_item_count": len(derivation["line_items"]),
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except IntegrityError:
        # A concurrent request stored the same period first.
        session.rollback()
        existing = _ledger_row(session, referral_doctor_id, branch_id, period_start, period_end)
        if existing is None:
            raise
        return existing, derivation, False
    except Exception:
        session.rollback()
        raise

    session.refresh(payout)
    logger.info(
        "Derived payout %s for referral doctor %s: %s paise",
        payout.id, referral_doctor_id, payout.derived_amount_in_paise,
    )
    return payout, derivation, True


def list_payouts(
    session: Session,
    branch_id: int,
    *,
    referral_doctor_id: Optional[int] = None,
    is_paid: Optional[bool] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[DoctorPayout]:
    query = select(DoctorPayout).where(DoctorPayout.branch_id == branch_id)
    if referral_doctor_id is not None:
        query = query.where(DoctorPayout.referral_doctor_id == referral_doctor_id)
    if is_paid is True:
        query = query.where(DoctorPayout.paid_at.is_not(None))  # type: ignore[union-attr]
    elif is_paid is False:
        query = query.where(DoctorPayout.paid_at.is_(None))  # type: ignore[union-attr]
    if start is not None:
        query = query.where(DoctorPayout.period_start >= start)
    if end is not None:
        query = query.where(DoctorPayout.period_end <= end)
    return list(
        session.exec(query.order_by(DoctorPayout.derived_at.desc(), DoctorPayout.id.desc())).all()  # type: ignore[union-attr]
    )


def get_branch_payout(session: Session, payout_id: int, branch_id: int) -> DoctorPayout:
    payout = session.get(DoctorPayout, payout_id)
    # Payouts of other branches are reported as missing.
    if payout is None or payout.branch_id != branch_id:
        raise NotFoundError("Payout not found")
    return payout


def payout_line_items(session: Session, payout: DoctorPayout) -> list[dict]:
    derivation = derive_referral_payout(
        session, payout.referral_doctor_id, payout.branch_id, payout.period_start, payout.period_end
    )
    return derivation["line_items"]


def mark_payout_paid(
    session: Session,
    payout: DoctorPayout,
    *,
    payment_method: PayoutMethod,
    payment_reference_id: Optional[str] = None,
    notes: Optional[str] = None,
    actor_id: int | None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> DoctorPayout:
    """Record payment; a paid payout can never be changed again."""
    if payout.paid_at is not None:
        raise PayoutPaidError("Payout has already been paid and cannot be modified")

    now = datetime.utcnow()
    table = DoctorPayout.__table__  # type: ignore[attr-defined]
    try:
        result = session.exec(
            update(table)
            .where(table.c.id == payout.id, table.c.paid_at.is_(None))
            .values(
                paid_at=now,
                payment_method=payment_method,
                payment_reference_id=payment_reference_id,
                notes=notes,
            )
        )
        if result.rowcount == 0:
            raise PayoutPaidError("Payout was already paid by another request")

        log_action(
            session,
            action_type=AuditActionType.PAYOUT_PAID,
            entity_type="Payout",
            entity_id=payout.id,
            branch_id=payout.branch_id,
            user_id=actor_id,
            old_values={"is_paid": False},
            new_values={
                "is_paid": True,
                "payment_method": payment_method.value,
                "payment_reference_id": payment_reference_id,
                "notes": notes,
                "paid_at": now.isoformat(),
                "derived_amount_in_paise": payout.derived_amount_in_paise,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(payout)
    logger.info("Payout %s marked paid via %s", payout.id, payment_method.value)
    return payout
