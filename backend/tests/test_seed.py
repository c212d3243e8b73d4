import os
import sqlite3
import subprocess
import sys
from pathlib import Path


BACKEND_DIR = Path(__file__).resolve().parents[1]
SEED_SCRIPT = BACKEND_DIR / "seed.py"

EXPECTED_BRANCHES = {"MPR", "KPY"}

EXPECTED_USERS = {
    "owner@labdesk.local",
    "admin@labdesk.local",
    "staff@labdesk.local",
}


def _run_seed(db_file: Path):
    env = os.environ.copy()
    env.pop("LABDESK_DATABASE_URL", None)
    env["LABDESK_DB_FILE"] = str(db_file)
    env["LABDESK_SEED_DEMO_DATA"] = "1"
    run = subprocess.run(
        [sys.executable, str(SEED_SCRIPT)],
        cwd=str(BACKEND_DIR),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    assert run.returncode == 0, f"seed.py failed\nSTDOUT:\n{run.stdout}\nSTDERR:\n{run.stderr}"


def _read_rows(db_file: Path):
    with sqlite3.connect(db_file) as conn:
        branches = [row[0] for row in conn.execute("SELECT code FROM branch").fetchall()]
        users = [row[0] for row in conn.execute('SELECT email FROM "user"').fetchall()]
        patients = [row[0] for row in conn.execute("SELECT patient_number FROM patient").fetchall()]
        tests = conn.execute("SELECT COUNT(*) FROM labtest").fetchone()[0]
    return branches, users, patients, tests


def test_seed_is_idempotent(tmp_path):
    db_file = tmp_path / "seed-idempotent.db"

    _run_seed(db_file)
    _run_seed(db_file)

    branches, users, patients, tests = _read_rows(db_file)

    assert sorted(branches) == sorted(EXPECTED_BRANCHES)
    assert sorted(users) == sorted(EXPECTED_USERS)
    assert patients == ["P-00001"]
    assert tests == 8
