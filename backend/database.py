import logging
import os
from pathlib import Path

from sqlalchemy import event, inspect
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from immutability import register_immutability_listeners
from triggers import register_triggers

logger = logging.getLogger("labdesk.db")

DB_FILE = Path(os.getenv("LABDESK_DB_FILE", str(Path(__file__).resolve().parent / "labdesk.db")))
DATABASE_URL = os.getenv("LABDESK_DATABASE_URL") or f"sqlite:///{DB_FILE}"
SQLITE_BUSY_TIMEOUT_SECONDS = 10


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    return create_engine(url, echo=False, pool_pre_ping=True)


@event.listens_for(Engine, "connect")
def _sqlite_pragmas(dbapi_connection, connection_record):
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


register_triggers()
register_immutability_listeners()

engine = build_engine(DATABASE_URL)


REQUIRED_COLUMNS = {
    "numbersequence": {"id", "prefix", "last_value", "updated_at"},
    "bill": {
        "id",
        "visit_id",
        "branch_id",
        "bill_number",
        "total_amount_in_paise",
        "payment_type",
        "payment_status",
    },
    "testorder": {
        "id",
        "visit_id",
        "test_id",
        "branch_id",
        "test_name",
        "test_code",
        "price_in_paise",
        "reference_min",
        "reference_max",
        "reference_unit",
        "referral_commission_percent",
    },
    "reportversion": {
        "id",
        "report_id",
        "version_num",
        "status",
        "finalized_at",
        "finalized_by",
        "updated_at",
    },
}


def _schema_needs_rebuild(bind: Engine) -> bool:
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True

    return False


def create_db(bind: Engine = engine):
    if _schema_needs_rebuild(bind):
        if bind.dialect.name != "sqlite":
            raise RuntimeError("Schema mismatch on a non-SQLite database; run a migration instead")
        logger.warning("Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(bind)
    SQLModel.metadata.create_all(bind)


def get_session():
    with Session(engine) as session:
        yield session
