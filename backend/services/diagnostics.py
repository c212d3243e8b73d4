from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from models import (
    AuditActionType,
    Bill,
    Branch,
    DiagnosticReport,
    LabTest,
    Patient,
    PaymentStatus,
    PaymentType,
    ReferralDoctor,
    ReportStatus,
    ReportVersion,
    TestOrder,
    TestResult,
    Visit,
    VisitDomain,
    VisitStatus,
)
from services.audit import log_action
from services.errors import DuplicateTestsError, NotFoundError, ValidationError
from services.report_lifecycle import lock_draft, report_for_visit
from services.sequence import allocate_bill_number
from state_machine import validate_visit_transition

logger = logging.getLogger("labdesk.visits")


def resolve_tests(session: Session, test_ids: list[int]) -> list[LabTest]:
    """Load active catalog tests in request order, rejecting unknown or repeated ids."""
    if not test_ids:
        raise ValidationError("At least one test is required")
    if len(set(test_ids)) != len(test_ids):
        raise ValidationError("The same test was requested more than once")

    tests = session.exec(
        select(LabTest).where(LabTest.id.in_(test_ids), LabTest.is_active == True)  # type: ignore[union-attr]  # noqa: E712
    ).all()
    by_id = {test.id: test for test in tests}
    missing = [test_id for test_id in test_ids if test_id not in by_id]
    if missing:
        raise ValidationError("One or more tests not found or inactive", missing_test_ids=missing)
    return [by_id[test_id] for test_id in test_ids]


def snapshot_order(test: LabTest, *, visit_id: int, branch_id: int, commission_percent: float) -> TestOrder:
    """Copy the catalog data an order must keep even if the catalog changes later."""
    return TestOrder(
        visit_id=visit_id,
        test_id=test.id,
        branch_id=branch_id,
        test_name=test.name,
        test_code=test.code,
        price_in_paise=test.price_in_paise,
        reference_min=test.reference_min,
        reference_max=test.reference_max,
        reference_unit=test.reference_unit,
        referral_commission_percent=commission_percent,
    )


def orders_for_visit(session: Session, visit_id: int) -> list[TestOrder]:
    return list(
        session.exec(
            select(TestOrder)
            .where(TestOrder.visit_id == visit_id)
            .order_by(TestOrder.id.asc())  # type: ignore[union-attr]
        ).all()
    )


def bill_for_visit(session: Session, visit_id: int) -> Bill | None:
    return session.exec(select(Bill).where(Bill.visit_id == visit_id)).first()


def _commission_for(session: Session, visit: Visit) -> float:
    if visit.referral_doctor_id is None:
        return 0.0
    doctor = session.get(ReferralDoctor, visit.referral_doctor_id)
    return doctor.commission_percent if doctor else 0.0


def _set_totals(session: Session, visit: Visit, total_in_paise: int, now: datetime) -> None:
    visit.total_amount_in_paise = total_in_paise
    visit.updated_at = now
    session.add(visit)
    bill = bill_for_visit(session, visit.id)
    if bill is not None:
        bill.total_amount_in_paise = total_in_paise
        session.add(bill)


def create_diagnostic_visit(
    session: Session,
    *,
    branch: Branch,
    patient_id: int,
    tests: list[LabTest],
    referral_doctor_id: Optional[int] = None,
    payment_type: PaymentType = PaymentType.CASH,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    actor_id: int | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Visit:
    """Create Visit, Bill, TestOrders and a DRAFT report version in one transaction.

    The bill number is allocated before anything else is written. If any
    later insert fails, every row of the visit is rolled back and the number
    stays consumed.
    """
    if not tests:
        raise ValidationError("At least one test is required")

    patient = session.get(Patient, patient_id)
    if not patient or not patient.is_active:
        raise ValidationError("Patient not found")

    commission_percent = 0.0
    if referral_doctor_id is not None:
        doctor = session.get(ReferralDoctor, referral_doctor_id)
        if not doctor or not doctor.is_active:
            raise ValidationError("Referral doctor not found or inactive")
        commission_percent = doctor.commission_percent

    bill_number = allocate_bill_number(session.get_bind(), branch.code)
    total_in_paise = sum(test.price_in_paise for test in tests)

    try:
        visit = Visit(
            branch_id=branch.id,
            patient_id=patient_id,
            referral_doctor_id=referral_doctor_id,
            domain=VisitDomain.DIAGNOSTICS,
            status=VisitStatus.DRAFT,
            bill_number=bill_number,
            total_amount_in_paise=total_in_paise,
            created_by=actor_id,
        )
        session.add(visit)
        session.flush()

        session.add(
            Bill(
                visit_id=visit.id,
                branch_id=branch.id,
                bill_number=bill_number,
                total_amount_in_paise=total_in_paise,
                payment_type=payment_type,
                payment_status=payment_status,
            )
        )
        for test in tests:
            session.add(
                snapshot_order(
                    test,
                    visit_id=visit.id,
                    branch_id=branch.id,
                    commission_percent=commission_percent,
                )
            )

        report = DiagnosticReport(visit_id=visit.id, branch_id=branch.id)
        session.add(report)
        session.flush()
        session.add(ReportVersion(report_id=report.id, version_num=1, status=ReportStatus.DRAFT))

        log_action(
            session,
            action_type=AuditActionType.CREATE,
            entity_type="Visit",
            entity_id=visit.id,
            branch_id=branch.id,
            user_id=actor_id,
            new_values={
                "domain": VisitDomain.DIAGNOSTICS.value,
                "bill_number": bill_number,
                "patient_id": patient_id,
                "total_amount_in_paise": total_in_paise,
                "test_ids": [test.id for test in tests],
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("Visit creation for bill %s rolled back; the number stays consumed", bill_number)
        raise

    session.refresh(visit)
    logger.info("Created diagnostic visit %s (%s) at branch %s", visit.id, bill_number, branch.code)
    return visit


def add_tests(
    session: Session,
    visit: Visit,
    test_ids: list[int],
    *,
    actor_id: int | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> list[TestOrder]:
    if not test_ids:
        raise ValidationError("At least one test ID is required")

    report = report_for_visit(session, visit.id)
    if report is None:
        raise ValidationError("Visit has no diagnostic report")

    try:
        lock_draft(session, report.id)

        existing = orders_for_visit(session, visit.id)
        existing_test_ids = {order.test_id for order in existing}
        duplicates = [test_id for test_id in test_ids if test_id in existing_test_ids]
        if duplicates:
            raise DuplicateTestsError(
                "Some tests are already ordered for this visit",
                duplicate_test_ids=duplicates,
            )

        tests = resolve_tests(session, test_ids)
        commission_percent = _commission_for(session, visit)
        old_total = visit.total_amount_in_paise
        new_total = old_total + sum(test.price_in_paise for test in tests)
        now = datetime.utcnow()

        added = [
            snapshot_order(test, visit_id=visit.id, branch_id=visit.branch_id, commission_percent=commission_percent)
            for test in tests
        ]
        for order in added:
            session.add(order)
        _set_totals(session, visit, new_total, now)

        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="Visit",
            entity_id=visit.id,
            branch_id=visit.branch_id,
            user_id=actor_id,
            old_values={"test_count": len(existing), "total_amount_in_paise": old_total},
            new_values={
                "test_count": len(existing) + len(added),
                "total_amount_in_paise": new_total,
                "added_test_ids": list(test_ids),
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    for order in added:
        session.refresh(order)
    session.refresh(visit)
    return added


def remove_test(
    session: Session,
    visit: Visit,
    test_order_id: int,
    *,
    actor_id: int | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> int:
    """Delete one test order; returns the new visit total in paise."""
    report = report_for_visit(session, visit.id)
    if report is None:
        raise ValidationError("Visit has no diagnostic report")

    try:
        draft = lock_draft(session, report.id)

        orders = orders_for_visit(session, visit.id)
        order = next((item for item in orders if item.id == test_order_id), None)
        if order is None:
            raise NotFoundError("Test order not found")
        if len(orders) <= 1:
            raise ValidationError("Cannot remove the last test from a visit")

        old_total = visit.total_amount_in_paise
        new_total = old_total - order.price_in_paise
        now = datetime.utcnow()

        results = session.exec(
            select(TestResult).where(
                TestResult.test_order_id == order.id,
                TestResult.report_version_id == draft.id,
            )
        ).all()
        for result in results:
            session.delete(result)
        session.delete(order)
        _set_totals(session, visit, new_total, now)

        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="Visit",
            entity_id=visit.id,
            branch_id=visit.branch_id,
            user_id=actor_id,
            old_values={"test_count": len(orders), "total_amount_in_paise": old_total},
            new_values={
                "test_count": len(orders) - 1,
                "total_amount_in_paise": new_total,
                "removed_test_order_id": test_order_id,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(visit)
    return new_total


def save_results(
    session: Session,
    visit: Visit,
    results: list[dict],
    *,
    actor_id: int | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> list[TestResult]:
    """Replace the draft version's results for each listed test; ``value=None`` clears it."""
    submitted = [item["test_id"] for item in results]
    repeated = sorted({test_id for test_id in submitted if submitted.count(test_id) > 1})
    if repeated:
        raise ValidationError("Each test may appear only once per request", repeated_test_ids=repeated)

    report = report_for_visit(session, visit.id)
    if report is None:
        raise ValidationError("Visit has no diagnostic report")

    try:
        draft = lock_draft(session, report.id)

        orders_by_test = {order.test_id: order for order in orders_for_visit(session, visit.id)}
        unknown = [item["test_id"] for item in results if item["test_id"] not in orders_by_test]
        if unknown:
            raise ValidationError("Results submitted for tests not ordered on this visit", unknown_test_ids=unknown)

        saved: list[TestResult] = []
        for item in results:
            order = orders_by_test[item["test_id"]]
            existing = session.exec(
                select(TestResult).where(
                    TestResult.test_order_id == order.id,
                    TestResult.report_version_id == draft.id,
                )
            ).all()
            for row in existing:
                session.delete(row)
            session.flush()

            if item.get("value") is not None:
                result = TestResult(
                    report_version_id=draft.id,
                    test_order_id=order.id,
                    value=float(item["value"]),
                    flag=item.get("flag"),
                    notes=item.get("notes"),
                )
                session.add(result)
                saved.append(result)

        if visit.status == VisitStatus.DRAFT:
            visit.status = VisitStatus.WAITING
        visit.updated_at = datetime.utcnow()
        session.add(visit)

        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="ReportVersion",
            entity_id=draft.id,
            branch_id=visit.branch_id,
            user_id=actor_id,
            new_values={"results_saved": len(saved), "test_ids": [item["test_id"] for item in results]},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    for result in saved:
        session.refresh(result)
    return saved


def update_visit(
    session: Session,
    visit: Visit,
    *,
    status: Optional[VisitStatus] = None,
    payment_type: Optional[PaymentType] = None,
    payment_status: Optional[PaymentStatus] = None,
    actor_id: int | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Visit:
    if status == VisitStatus.COMPLETED:
        raise ValidationError("Visits are completed by finalizing their report")
    if status is not None:
        try:
            validate_visit_transition(visit.status, status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    bill = bill_for_visit(session, visit.id)
    old_values = {
        "status": visit.status.value,
        "payment_type": bill.payment_type.value if bill else None,
        "payment_status": bill.payment_status.value if bill else None,
    }

    try:
        if status is not None:
            visit.status = status
        visit.updated_at = datetime.utcnow()
        session.add(visit)
        if bill is not None:
            if payment_type is not None:
                bill.payment_type = payment_type
            if payment_status is not None:
                bill.payment_status = payment_status
            session.add(bill)

        log_action(
            session,
            action_type=AuditActionType.UPDATE,
            entity_type="Visit",
            entity_id=visit.id,
            branch_id=visit.branch_id,
            user_id=actor_id,
            old_values=old_values,
            new_values={
                "status": visit.status.value,
                "payment_type": bill.payment_type.value if bill else None,
                "payment_status": bill.payment_status.value if bill else None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(visit)
    return visit
