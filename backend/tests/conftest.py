from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Keep the app's own engine away from the working database during tests.
os.environ.setdefault("LABDESK_DB_FILE", str(Path(tempfile.mkdtemp(prefix="labdesk-tests-")) / "app.db"))

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from database import build_engine, get_session
from main import app
from models import Branch, LabTest, ReferralDoctor, User, UserBranch, UserRole
from services.auth import hash_password
from services.sequence import generate_referral_doctor_number


def with_branch(headers: dict[str, str], branch_id: int) -> dict[str, str]:
    return {**headers, "X-Branch-Id": str(branch_id)}


@pytest.fixture
def engine(tmp_path):
    # A file database: the number allocator and the concurrency tests need
    # real separate connections, which a shared in-memory pool cannot give.
    test_engine = build_engine(f"sqlite:///{tmp_path / 'labdesk-test.db'}")
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _session_override(test_engine):
    def _override_get_session():
        with Session(test_engine) as session:
            yield session

    return _override_get_session


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_session] = _session_override(engine)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(engine):
    app.dependency_overrides[get_session] = _session_override(engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(engine):
    users = {
        "owner": {
            "name": "Owner",
            "email": "owner@labdesk.local",
            "password": "owner123",
            "role": UserRole.OWNER,
            "branches": [],
        },
        "admin": {
            "name": "Admin",
            "email": "admin@labdesk.local",
            "password": "admin123",
            "role": UserRole.ADMIN,
            "branches": ["MPR", "KPY"],
        },
        "staff": {
            "name": "Front Desk",
            "email": "staff@labdesk.local",
            "password": "staff123",
            "role": UserRole.STAFF,
            "branches": ["MPR"],
        },
    }

    with Session(engine) as session:
        branches = {
            "MPR": Branch(name="Madhapur", code="MPR"),
            "KPY": Branch(name="Kukatpally", code="KPY"),
        }
        for branch in branches.values():
            session.add(branch)
        session.commit()

        for spec in users.values():
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
            )
            session.add(user)
            session.commit()
            for code in spec["branches"]:
                session.add(UserBranch(user_id=user.id, branch_id=branches[code].id))
            spec["id"] = user.id
        session.commit()

        tests = {
            "CBC": LabTest(name="Complete Blood Count", code="CBC", price_in_paise=35000),
            "HB": LabTest(
                name="Hemoglobin",
                code="HB",
                price_in_paise=8000,
                reference_min=12,
                reference_max=17,
                reference_unit="g/dL",
            ),
            "LFT": LabTest(name="Liver Function Test", code="LFT", price_in_paise=55000),
        }
        for test in tests.values():
            session.add(test)
        session.commit()

        doctor = ReferralDoctor(
            doctor_number=generate_referral_doctor_number(engine),
            name="Dr. Sharma",
            commission_percent=10.0,
        )
        session.add(doctor)
        session.commit()

        return {
            "users": users,
            "branches": {code: branch.id for code, branch in branches.items()},
            "tests": {code: test.id for code, test in tests.items()},
            "referral_doctor_id": doctor.id,
        }


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_headers(client: TestClient, seeded):
    return _login(client, seeded["users"]["owner"]["email"], seeded["users"]["owner"]["password"])


@pytest.fixture
def admin_headers(client: TestClient, seeded):
    return _login(client, seeded["users"]["admin"]["email"], seeded["users"]["admin"]["password"])


@pytest.fixture
def staff_headers(client: TestClient, seeded):
    return _login(client, seeded["users"]["staff"]["email"], seeded["users"]["staff"]["password"])


@pytest.fixture
def mpr_headers(staff_headers, seeded):
    return with_branch(staff_headers, seeded["branches"]["MPR"])


@pytest.fixture
def patient_id(client: TestClient, mpr_headers):
    response = client.post(
        "/patients",
        headers=mpr_headers,
        json={"name": "Anita Rao", "age": 44, "gender": "Female", "phone": "9000000001"},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def visit(client: TestClient, mpr_headers, seeded, patient_id):
    response = client.post(
        "/visits/diagnostic",
        headers=mpr_headers,
        json={
            "patient_id": patient_id,
            "test_ids": [seeded["tests"]["CBC"], seeded["tests"]["HB"]],
        },
    )
    assert response.status_code == 201, response.text
    return response.json()
