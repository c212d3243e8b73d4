"""Database-level guards for rows that must never change.

These triggers are the storage-side half of the immutability rules; the
ORM listeners in ``immutability.py`` and the checks in
``services/report_lifecycle.py`` are the application side. A raw UPDATE that
bypasses both still fails here.

Guards:
    reportversion  no UPDATE or DELETE once status = 'FINALIZED'
    testresult     no INSERT, UPDATE or DELETE against a finalized version
    bill           bill_number and branch_id never change
    numbersequence last_value never decreases, rows are never deleted
    auditlog       insert-only
    doctorpayout   amounts and periods never change, paid rows are frozen
    patientchangelog insert-only

Both SQLite (tests, single-site installs) and PostgreSQL are covered. Each
statement is attached to the ``after_create`` event of its table so
``SQLModel.metadata.create_all`` installs them together with the schema.
"""

from sqlalchemy import DDL, event

from models import AuditLog, Bill, DoctorPayout, NumberSequence, PatientChangeLog, ReportVersion, TestResult

REPORT_FINALIZED_MESSAGE = "REPORT_FINALIZED: finalized report versions are read-only"
BILL_NUMBER_MESSAGE = "BILL_IMMUTABLE: bill number and branch cannot change"
SEQUENCE_MESSAGE = "SEQUENCE_MONOTONIC: number sequences never move backwards"
AUDIT_MESSAGE = "AUDIT_INSERT_ONLY: audit log rows cannot be changed"
PAYOUT_MESSAGE = "PAYOUT_FROZEN: paid payouts and derived amounts cannot change"


def _sqlite_abort(name: str, timing: str, table: str, condition: str, message: str) -> str:
    return (
        f"CREATE TRIGGER IF NOT EXISTS {name} {timing} ON {table} "
        f"FOR EACH ROW WHEN {condition} "
        f"BEGIN SELECT RAISE(ABORT, '{message}'); END"
    )


SQLITE_TRIGGERS: dict[str, list[str]] = {
    "reportversion": [
        _sqlite_abort(
            "trg_reportversion_finalized_update", "BEFORE UPDATE", "reportversion",
            "OLD.status = 'FINALIZED'", REPORT_FINALIZED_MESSAGE,
        ),
        _sqlite_abort(
            "trg_reportversion_finalized_delete", "BEFORE DELETE", "reportversion",
            "OLD.status = 'FINALIZED'", REPORT_FINALIZED_MESSAGE,
        ),
    ],
    "testresult": [
        _sqlite_abort(
            "trg_testresult_finalized_insert", "BEFORE INSERT", "testresult",
            "(SELECT status FROM reportversion WHERE id = NEW.report_version_id) = 'FINALIZED'",
            REPORT_FINALIZED_MESSAGE,
        ),
        _sqlite_abort(
            "trg_testresult_finalized_update", "BEFORE UPDATE", "testresult",
            "(SELECT status FROM reportversion WHERE id = OLD.report_version_id) = 'FINALIZED' "
            "OR (SELECT status FROM reportversion WHERE id = NEW.report_version_id) = 'FINALIZED'",
            REPORT_FINALIZED_MESSAGE,
        ),
        _sqlite_abort(
            "trg_testresult_finalized_delete", "BEFORE DELETE", "testresult",
            "(SELECT status FROM reportversion WHERE id = OLD.report_version_id) = 'FINALIZED'",
            REPORT_FINALIZED_MESSAGE,
        ),
    ],
    "bill": [
        _sqlite_abort(
            "trg_bill_number_immutable", "BEFORE UPDATE", "bill",
            "NEW.bill_number IS NOT OLD.bill_number OR NEW.branch_id IS NOT OLD.branch_id",
            BILL_NUMBER_MESSAGE,
        ),
    ],
    "numbersequence": [
        _sqlite_abort(
            "trg_numbersequence_monotonic", "BEFORE UPDATE", "numbersequence",
            "NEW.last_value < OLD.last_value OR NEW.id IS NOT OLD.id", SEQUENCE_MESSAGE,
        ),
        _sqlite_abort(
            "trg_numbersequence_no_delete", "BEFORE DELETE", "numbersequence",
            "1", SEQUENCE_MESSAGE,
        ),
    ],
    "auditlog": [
        _sqlite_abort("trg_auditlog_no_update", "BEFORE UPDATE", "auditlog", "1", AUDIT_MESSAGE),
        _sqlite_abort("trg_auditlog_no_delete", "BEFORE DELETE", "auditlog", "1", AUDIT_MESSAGE),
    ],
    "doctorpayout": [
        _sqlite_abort(
            "trg_doctorpayout_frozen_update", "BEFORE UPDATE", "doctorpayout",
            "OLD.paid_at IS NOT NULL "
            "OR NEW.derived_amount_in_paise IS NOT OLD.derived_amount_in_paise "
            "OR NEW.referral_doctor_id IS NOT OLD.referral_doctor_id "
            "OR NEW.branch_id IS NOT OLD.branch_id "
            "OR NEW.period_start IS NOT OLD.period_start "
            "OR NEW.period_end IS NOT OLD.period_end",
            PAYOUT_MESSAGE,
        ),
        _sqlite_abort(
            "trg_doctorpayout_paid_delete", "BEFORE DELETE", "doctorpayout",
            "OLD.paid_at IS NOT NULL", PAYOUT_MESSAGE,
        ),
    ],
    "patientchangelog": [
        _sqlite_abort("trg_patientchangelog_no_update", "BEFORE UPDATE", "patientchangelog", "1", AUDIT_MESSAGE),
        _sqlite_abort("trg_patientchangelog_no_delete", "BEFORE DELETE", "patientchangelog", "1", AUDIT_MESSAGE),
    ],
}


def _pg_function(name: str, body: str) -> str:
    return (
        f"CREATE OR REPLACE FUNCTION {name}() RETURNS TRIGGER AS $$\n"
        f"BEGIN\n{body}\nEND;\n$$ LANGUAGE plpgsql"
    )


def _pg_trigger(name: str, timing: str, table: str, function: str) -> list[str]:
    return [
        f"DROP TRIGGER IF EXISTS {name} ON {table}",
        f"CREATE TRIGGER {name} {timing} ON {table} FOR EACH ROW EXECUTE FUNCTION {function}()",
    ]


POSTGRES_TRIGGERS: dict[str, list[str]] = {
    "reportversion": [
        _pg_function(
            "prevent_finalized_report_mutation",
            "  IF OLD.status = 'FINALIZED' THEN\n"
            f"    RAISE EXCEPTION '{REPORT_FINALIZED_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  IF TG_OP = 'DELETE' THEN RETURN OLD; END IF;\n"
            "  RETURN NEW;",
        ),
        *_pg_trigger(
            "trg_reportversion_finalized", "BEFORE UPDATE OR DELETE", "reportversion",
            "prevent_finalized_report_mutation",
        ),
    ],
    "testresult": [
        _pg_function(
            "prevent_finalized_result_mutation",
            "  IF TG_OP <> 'INSERT' AND EXISTS (\n"
            "    SELECT 1 FROM reportversion WHERE id = OLD.report_version_id AND status = 'FINALIZED'\n"
            "  ) THEN\n"
            f"    RAISE EXCEPTION '{REPORT_FINALIZED_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  IF TG_OP <> 'DELETE' AND EXISTS (\n"
            "    SELECT 1 FROM reportversion WHERE id = NEW.report_version_id AND status = 'FINALIZED'\n"
            "  ) THEN\n"
            f"    RAISE EXCEPTION '{REPORT_FINALIZED_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  IF TG_OP = 'DELETE' THEN RETURN OLD; END IF;\n"
            "  RETURN NEW;",
        ),
        *_pg_trigger(
            "trg_testresult_finalized", "BEFORE INSERT OR UPDATE OR DELETE", "testresult",
            "prevent_finalized_result_mutation",
        ),
    ],
    "bill": [
        _pg_function(
            "prevent_bill_number_change",
            "  IF NEW.bill_number IS DISTINCT FROM OLD.bill_number\n"
            "     OR NEW.branch_id IS DISTINCT FROM OLD.branch_id THEN\n"
            f"    RAISE EXCEPTION '{BILL_NUMBER_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  RETURN NEW;",
        ),
        *_pg_trigger("trg_bill_number_immutable", "BEFORE UPDATE", "bill", "prevent_bill_number_change"),
    ],
    "numbersequence": [
        _pg_function(
            "prevent_sequence_rewind",
            "  IF TG_OP = 'DELETE' OR NEW.last_value < OLD.last_value OR NEW.id IS DISTINCT FROM OLD.id THEN\n"
            f"    RAISE EXCEPTION '{SEQUENCE_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  RETURN NEW;",
        ),
        *_pg_trigger(
            "trg_numbersequence_monotonic", "BEFORE UPDATE OR DELETE", "numbersequence",
            "prevent_sequence_rewind",
        ),
    ],
    "auditlog": [
        _pg_function(
            "prevent_audit_mutation",
            f"  RAISE EXCEPTION '{AUDIT_MESSAGE}' USING ERRCODE = 'check_violation';",
        ),
        *_pg_trigger("trg_auditlog_insert_only", "BEFORE UPDATE OR DELETE", "auditlog", "prevent_audit_mutation"),
    ],
    "doctorpayout": [
        _pg_function(
            "prevent_paid_payout_mutation",
            "  IF OLD.paid_at IS NOT NULL THEN\n"
            f"    RAISE EXCEPTION '{PAYOUT_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  IF TG_OP = 'DELETE' THEN RETURN OLD; END IF;\n"
            "  IF NEW.derived_amount_in_paise IS DISTINCT FROM OLD.derived_amount_in_paise\n"
            "     OR NEW.referral_doctor_id IS DISTINCT FROM OLD.referral_doctor_id\n"
            "     OR NEW.branch_id IS DISTINCT FROM OLD.branch_id\n"
            "     OR NEW.period_start IS DISTINCT FROM OLD.period_start\n"
            "     OR NEW.period_end IS DISTINCT FROM OLD.period_end THEN\n"
            f"    RAISE EXCEPTION '{PAYOUT_MESSAGE}' USING ERRCODE = 'check_violation';\n"
            "  END IF;\n"
            "  RETURN NEW;",
        ),
        *_pg_trigger(
            "trg_doctorpayout_frozen", "BEFORE UPDATE OR DELETE", "doctorpayout",
            "prevent_paid_payout_mutation",
        ),
    ],
    "patientchangelog": [
        _pg_function(
            "prevent_change_log_mutation",
            f"  RAISE EXCEPTION '{AUDIT_MESSAGE}' USING ERRCODE = 'check_violation';",
        ),
        *_pg_trigger(
            "trg_patientchangelog_insert_only", "BEFORE UPDATE OR DELETE", "patientchangelog",
            "prevent_change_log_mutation",
        ),
    ],
}

GUARDED_TABLES = {
    "reportversion": ReportVersion,
    "testresult": TestResult,
    "bill": Bill,
    "numbersequence": NumberSequence,
    "auditlog": AuditLog,
    "doctorpayout": DoctorPayout,
    "patientchangelog": PatientChangeLog,
}

_registered = False


def register_triggers() -> None:
    """Attach the trigger DDL to the guarded tables' ``after_create`` events."""
    global _registered
    if _registered:
        return

    for table_name, model in GUARDED_TABLES.items():
        table = model.__table__  # type: ignore[attr-defined]
        for statement in SQLITE_TRIGGERS[table_name]:
            event.listen(table, "after_create", DDL(statement).execute_if(dialect="sqlite"))
        for statement in POSTGRES_TRIGGERS[table_name]:
            event.listen(table, "after_create", DDL(statement).execute_if(dialect="postgresql"))

    _registered = True


def trigger_names(dialect: str) -> list[str]:
    """Names of the triggers ``register_triggers`` installs for ``dialect``."""
    if dialect == "sqlite":
        sources = SQLITE_TRIGGERS
        marker = "CREATE TRIGGER IF NOT EXISTS "
    else:
        sources = POSTGRES_TRIGGERS
        marker = "CREATE TRIGGER "
    names = []
    for statements in sources.values():
        for statement in statements:
            if statement.startswith(marker):
                names.append(statement[len(marker):].split(" ", 1)[0])
    return names
