"""DRAFT -> FINALIZED lifecycle of diagnostic report versions.

``finalize`` is a conditional UPDATE (``WHERE status = 'DRAFT'``), so two
concurrent requests cannot both succeed. Every mutation that depends on the
report still being open calls ``lock_draft`` first: it rejects finalized
reports before writing anything, then touches the draft row inside the
caller's transaction. That write takes the same lock ``finalize`` needs, which
makes check-then-mutate a single atomic unit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from models import (
    AuditActionType,
    DiagnosticReport,
    ReportStatus,
    ReportVersion,
    Visit,
    VisitStatus,
)
from services.audit import log_action
from services.errors import AlreadyFinalizedError, NotFoundError, ReportFinalizedError, ValidationError
from state_machine import validate_report_transition

logger = logging.getLogger("labdesk.reports")


def report_for_visit(session: Session, visit_id: int) -> DiagnosticReport | None:
    return session.exec(select(DiagnosticReport).where(DiagnosticReport.visit_id == visit_id)).first()


def versions_for_report(session: Session, report_id: int) -> list[ReportVersion]:
    return list(
        session.exec(
            select(ReportVersion)
            .where(ReportVersion.report_id == report_id)
            .order_by(ReportVersion.version_num.desc())  # type: ignore[union-attr]
        ).all()
    )


def latest_version(session: Session, report_id: int) -> ReportVersion | None:
    versions = versions_for_report(session, report_id)
    return versions[0] if versions else None


def is_finalized(session: Session, report_id: int) -> bool:
    finalized = session.exec(
        select(ReportVersion.id).where(
            ReportVersion.report_id == report_id,
            ReportVersion.status == ReportStatus.FINALIZED,
        )
    ).first()
    return finalized is not None


def lock_draft(session: Session, report_id: int) -> ReportVersion:
    """Gate for every mutation of an open report; returns the locked draft version."""
    if is_finalized(session, report_id):
        raise ReportFinalizedError("Report has been finalized and can no longer be changed")

    table = ReportVersion.__table__  # type: ignore[attr-defined]
    result = session.exec(
        update(table)
        .where(table.c.report_id == report_id, table.c.status == ReportStatus.DRAFT)
        .values(updated_at=datetime.utcnow())
    )
    if result.rowcount == 0:
        # The draft disappeared between the check and the lock: a finalize won the race.
        if is_finalized(session, report_id):
            raise ReportFinalizedError("Report has been finalized and can no longer be changed")
        raise ValidationError("No draft report version found")

    draft = session.exec(
        select(ReportVersion)
        .where(ReportVersion.report_id == report_id, ReportVersion.status == ReportStatus.DRAFT)
        .order_by(ReportVersion.version_num.desc())  # type: ignore[union-attr]
        .execution_options(populate_existing=True)
    ).first()
    if draft is None:
        raise ValidationError("No draft report version found")
    return draft


def finalize(
    session: Session,
    report_version_id: int,
    *,
    actor_id: int | None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ReportVersion:
    version = session.get(ReportVersion, report_version_id)
    if version is None:
        raise NotFoundError("Report version not found")
    if version.status == ReportStatus.FINALIZED:
        raise AlreadyFinalizedError("Report version is already finalized")

    try:
        validate_report_transition(version.status, ReportStatus.FINALIZED)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    report = session.get(DiagnosticReport, version.report_id)
    visit = session.get(Visit, report.visit_id) if report else None
    if report is None or visit is None:
        raise NotFoundError("Diagnostic report not found")

    now = datetime.utcnow()
    table = ReportVersion.__table__  # type: ignore[attr-defined]
    try:
        result = session.exec(
            update(table)
            .where(table.c.id == report_version_id, table.c.status == ReportStatus.DRAFT)
            .values(
                status=ReportStatus.FINALIZED,
                finalized_at=now,
                finalized_by=actor_id,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            raise AlreadyFinalizedError("Report was already finalized by another request")

        visit.status = VisitStatus.COMPLETED
        visit.updated_at = now
        session.add(visit)

        log_action(
            session,
            action_type=AuditActionType.FINALIZE,
            entity_type="Report",
            entity_id=report_version_id,
            branch_id=visit.branch_id,
            user_id=actor_id,
            old_values={"status": ReportStatus.DRAFT.value},
            new_values={
                "status": ReportStatus.FINALIZED.value,
                "report_version_id": report_version_id,
                "visit_id": visit.id,
                "finalized_at": now.isoformat(),
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(version)
    logger.info("Finalized report version %s of visit %s (%s)", version.id, visit.id, visit.bill_number)
    return version


def finalize_visit_report(
    session: Session,
    visit: Visit,
    *,
    actor_id: int | None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ReportVersion:
    report = report_for_visit(session, visit.id)
    if report is None:
        raise ValidationError("Visit has no diagnostic report")
    if is_finalized(session, report.id):
        raise AlreadyFinalizedError("Report was already finalized")
    version = latest_version(session, report.id)
    if version is None:
        raise ValidationError("No draft report version found")
    return finalize(
        session,
        version.id,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
