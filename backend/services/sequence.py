"""Branch-scoped, never-reused document numbers.

Every number comes from a single ``numbersequence`` row per key. Allocation
is an atomic ``UPDATE ... SET last_value = last_value + 1`` followed by a read
of the new value in the same transaction. The UPDATE takes the row lock on
PostgreSQL and the write lock on SQLite, so concurrent callers for one key are
serialized and see consecutive values while other keys are untouched.

The allocator runs on its own connection and commits before it returns. A
caller whose transaction later aborts therefore burns the number: gaps are
possible, duplicates are not.
"""

from __future__ import annotations

import logging
import os
import random
import re
import time
from datetime import datetime
from typing import Callable

from sqlalchemy import select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session

from models import NumberSequence
from services.errors import ConcurrencyError, ValidationError

logger = logging.getLogger("labdesk.sequence")

MAX_ATTEMPTS = int(os.getenv("LABDESK_SEQUENCE_MAX_ATTEMPTS", "8"))
BASE_DELAY_MS = int(os.getenv("LABDESK_SEQUENCE_BASE_DELAY_MS", "50"))
MAX_DELAY_MS = int(os.getenv("LABDESK_SEQUENCE_MAX_DELAY_MS", "2000"))
POSTGRES_LOCK_TIMEOUT = "2s"

NUMBER_WIDTH = 5

DOMAIN_LETTERS: dict[str, str] = {
    "diagnostic": "D",
}

PATIENT_SEQUENCE = ("patient", "P")
REFERRAL_DOCTOR_SEQUENCE = ("referral_doctor", "RD")

_BRANCH_CODE_RE = re.compile(r"^[A-Za-z0-9_]+$")

# lock_not_available, serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = {"55P03", "40001", "40P01"}
_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not obtain lock",
    "lock timeout",
    "deadlock",
    "could not serialize",
)


def format_number(prefix: str, value: int) -> str:
    return f"{prefix}-{value:0{NUMBER_WIDTH}d}"


def is_transient_lock_error(exc: OperationalError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class SequenceAllocator:
    def __init__(
        self,
        bind: Engine,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay_ms: int = BASE_DELAY_MS,
        max_delay_ms: int = MAX_DELAY_MS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._bind = bind
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep

    def allocate_next(self, branch_code: str, domain_prefix: str) -> str:
        """Return the next ``{letter}-{BRANCH}-{nnnnn}`` number for a branch and domain."""
        code = (branch_code or "").strip()
        if not code or not _BRANCH_CODE_RE.match(code):
            raise ValidationError(f"Invalid branch code: {branch_code!r}")
        domain = (domain_prefix or "").strip().lower()
        letter = DOMAIN_LETTERS.get(domain)
        if letter is None:
            raise ValidationError(f"Unknown numbering domain: {domain_prefix!r}")

        return self.next_number(f"{domain}-{code}", f"{letter}-{code}")

    def next_number(self, sequence_id: str, prefix: str) -> str:
        value = self._increment_with_retry(sequence_id, prefix)
        number = format_number(prefix, value)
        logger.debug("Allocated %s from sequence %s", number, sequence_id)
        return number

    def current_value(self, sequence_id: str) -> int | None:
        with Session(self._bind) as session:
            table = NumberSequence.__table__  # type: ignore[attr-defined]
            return session.exec(
                select(table.c.last_value).where(table.c.id == sequence_id)
            ).scalar_one_or_none()

    def backoff_seconds(self, attempt: int) -> float:
        delay_ms = self.base_delay_ms * (2 ** (attempt - 1)) + random.uniform(0, self.base_delay_ms)
        return min(delay_ms, self.max_delay_ms) / 1000.0

    def _increment_with_retry(self, sequence_id: str, prefix: str) -> int:
        last_error: OperationalError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._increment(sequence_id, prefix)
            except OperationalError as exc:
                if not is_transient_lock_error(exc):
                    raise
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = self.backoff_seconds(attempt)
                logger.warning(
                    "Sequence %s busy (attempt %d/%d), retrying in %.3fs",
                    sequence_id, attempt, self.max_attempts, delay,
                )
                self._sleep(delay)

        logger.error("Sequence %s still locked after %d attempts", sequence_id, self.max_attempts)
        raise ConcurrencyError(
            f"Could not allocate a number from {sequence_id} after {self.max_attempts} attempts",
            sequence=sequence_id,
        ) from last_error

    def _increment(self, sequence_id: str, prefix: str) -> int:
        with Session(self._bind) as session:
            if session.get_bind().dialect.name == "postgresql":
                session.exec(text(f"SET LOCAL lock_timeout = '{POSTGRES_LOCK_TIMEOUT}'"))

            value = self._bump(session, sequence_id)
            if value is not None:
                session.commit()
                return value

            session.add(NumberSequence(id=sequence_id, prefix=prefix, last_value=1))
            try:
                session.commit()
                logger.info("Created number sequence %s", sequence_id)
                return 1
            except IntegrityError:
                # Another caller created the row first; fall back to incrementing it.
                session.rollback()

            value = self._bump(session, sequence_id)
            if value is None:
                raise ConcurrencyError(f"Number sequence {sequence_id} vanished during allocation")
            session.commit()
            return value

    @staticmethod
    def _bump(session: Session, sequence_id: str) -> int | None:
        table = NumberSequence.__table__  # type: ignore[attr-defined]
        result = session.exec(
            update(table)
            .where(table.c.id == sequence_id)
            .values(last_value=table.c.last_value + 1, updated_at=datetime.utcnow())
        )
        if result.rowcount == 0:
            return None
        return session.exec(
            select(table.c.last_value).where(table.c.id == sequence_id)
        ).scalar_one()


def allocate_bill_number(bind: Engine, branch_code: str) -> str:
    return SequenceAllocator(bind).allocate_next(branch_code, "diagnostic")


def generate_patient_number(bind: Engine) -> str:
    return SequenceAllocator(bind).next_number(*PATIENT_SEQUENCE)


def generate_referral_doctor_number(bind: Engine) -> str:
    return SequenceAllocator(bind).next_number(*REFERRAL_DOCTOR_SEQUENCE)
