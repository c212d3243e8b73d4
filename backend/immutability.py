"""ORM-level guard for finalized report versions and paid payouts.

A ``before_flush`` listener rejects pending changes to a ReportVersion whose
stored status is FINALIZED, and to TestResult rows that belong to one. The
error raised is the same ``ReportFinalizedError`` the API gate raises, so a
code path that forgets the gate still fails with ``REPORT_FINALIZED`` before
any SQL is sent. Paid DoctorPayout rows are frozen the same way with
``PayoutPaidError``. Raw SQL is covered by the triggers in ``triggers.py``.
"""

import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from models import DoctorPayout, ReportStatus, ReportVersion, TestResult
from services.errors import PayoutPaidError, ReportFinalizedError

logger = logging.getLogger("labdesk.db")


def _stored(obj, attribute: str):
    """Value of ``attribute`` as last loaded from the database."""
    history = getattr(inspect(obj).attrs, attribute).history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def _stored_status(version: ReportVersion) -> ReportStatus | None:
    return _stored(version, "status")


def _version_is_finalized(session: Session, version_id: int | None) -> bool:
    if version_id is None:
        return False
    with session.no_autoflush:
        version = session.get(ReportVersion, version_id)
    return version is not None and _stored_status(version) == ReportStatus.FINALIZED


def _check_frozen_rows(session: Session, flush_context, instances) -> None:
    for obj in session.dirty:
        if isinstance(obj, ReportVersion) and session.is_modified(obj):
            if _stored_status(obj) == ReportStatus.FINALIZED:
                logger.warning("Blocked ORM update of finalized report version %s", obj.id)
                raise ReportFinalizedError(f"Report version {obj.id} is finalized and cannot be modified")
        elif isinstance(obj, TestResult) and session.is_modified(obj):
            original = inspect(obj).attrs.report_version_id.history
            version_ids = set(original.deleted or original.unchanged or ()) | {obj.report_version_id}
            if any(_version_is_finalized(session, vid) for vid in version_ids):
                raise ReportFinalizedError("Results of a finalized report cannot be modified")
        elif isinstance(obj, DoctorPayout) and session.is_modified(obj):
            if _stored(obj, "paid_at") is not None:
                raise PayoutPaidError(f"Payout {obj.id} has been paid and cannot be modified")

    for obj in session.deleted:
        if isinstance(obj, ReportVersion) and _stored_status(obj) == ReportStatus.FINALIZED:
            raise ReportFinalizedError(f"Report version {obj.id} is finalized and cannot be deleted")
        if isinstance(obj, TestResult) and _version_is_finalized(session, obj.report_version_id):
            raise ReportFinalizedError("Results of a finalized report cannot be deleted")
        if isinstance(obj, DoctorPayout) and _stored(obj, "paid_at") is not None:
            raise PayoutPaidError(f"Payout {obj.id} has been paid and cannot be deleted")

    for obj in session.new:
        if isinstance(obj, TestResult) and _version_is_finalized(session, obj.report_version_id):
            raise ReportFinalizedError("Results cannot be added to a finalized report")


def register_immutability_listeners() -> None:
    if not event.contains(Session, "before_flush", _check_frozen_rows):
        event.listen(Session, "before_flush", _check_frozen_rows)


def unregister_immutability_listeners() -> None:
    """Tests use this to prove the database triggers hold on their own."""
    if event.contains(Session, "before_flush", _check_frozen_rows):
        event.remove(Session, "before_flush", _check_frozen_rows)
