import pytest
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select, text

from models import AuditActionType, AuditLog, PatientChangeLog, PatientChangeType

from tests.conftest import with_branch


def test_patient_create_search_and_update(client, mpr_headers):
    p1 = client.post(
        "/patients",
        headers=mpr_headers,
        json={"name": "Alice Patel", "age": 50, "gender": "Female", "phone": "9000000011"},
    )
    p2 = client.post(
        "/patients",
        headers=mpr_headers,
        json={"name": "Bob Singh", "age": 39, "gender": "Male", "email": " Bob@Example.com "},
    )
    assert p1.status_code == 201
    assert p2.status_code == 201
    assert p1.json()["patient_number"] == "P-00001"
    assert p2.json()["patient_number"] == "P-00002"
    assert p2.json()["email"] == "bob@example.com"

    listing = client.get("/patients?page=1&page_size=50", headers=mpr_headers)
    assert listing.status_code == 200
    payload = listing.json()
    assert payload["total"] == 2

    by_name = client.get("/patients?search=Alice", headers=mpr_headers)
    assert [item["name"] for item in by_name.json()["patients"]] == ["Alice Patel"]
    by_phone = client.get("/patients?search=90000000", headers=mpr_headers)
    assert by_phone.json()["total"] == 1
    by_number = client.get("/patients?search=p-00002", headers=mpr_headers)
    assert [item["name"] for item in by_number.json()["patients"]] == ["Bob Singh"]

    patient_id = p1.json()["id"]
    update = client.patch(
        f"/patients/{patient_id}",
        headers=mpr_headers,
        json={"age": 51, "address": "Road 4", "change_reason": "Birthday passed"},
    )
    assert update.status_code == 200
    assert update.json()["age"] == 51
    assert update.json()["patient_number"] == "P-00001"

    empty = client.patch(f"/patients/{patient_id}", headers=mpr_headers, json={})
    assert empty.status_code == 422


def test_patient_creation_needs_branch_context(client, staff_headers, seeded):
    missing = client.post("/patients", headers=staff_headers, json={"name": "No Branch", "age": 20, "gender": "Male"})
    assert missing.status_code == 400

    other = client.post(
        "/patients",
        headers=with_branch(staff_headers, seeded["branches"]["KPY"]),
        json={"name": "Wrong Branch", "age": 20, "gender": "Male"},
    )
    assert other.status_code == 403


def test_patient_validation(client, mpr_headers):
    response = client.post("/patients", headers=mpr_headers, json={"name": "   ", "age": 20, "gender": "Male"})
    assert response.status_code == 422
    response = client.post("/patients", headers=mpr_headers, json={"name": "Too Old", "age": 200, "gender": "Male"})
    assert response.status_code == 422


def test_patient_detail_lists_visits(client, mpr_headers, patient_id, visit):
    response = client.get(f"/patients/{patient_id}", headers=mpr_headers)
    assert response.status_code == 200
    visits = response.json()["visits"]
    assert [item["bill_number"] for item in visits] == [visit["bill_number"]]

    missing = client.get("/patients/9999", headers=mpr_headers)
    assert missing.status_code == 404


def test_staff_identity_change_needs_reason(client, engine, mpr_headers, patient_id):
    response = client.patch(f"/patients/{patient_id}", headers=mpr_headers, json={"name": "Anita R. Rao"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert response.json()["identity_fields"] == ["name"]

    address_only = client.patch(f"/patients/{patient_id}", headers=mpr_headers, json={"address": "Lake Road"})
    assert address_only.status_code == 200

    with Session(engine) as session:
        rows = session.exec(select(PatientChangeLog)).all()
        assert [(row.field_name, row.change_type) for row in rows] == [("address", PatientChangeType.NON_IDENTITY)]


def test_admin_identity_change_without_reason(client, admin_headers, seeded, patient_id):
    response = client.patch(
        f"/patients/{patient_id}",
        headers=with_branch(admin_headers, seeded["branches"]["MPR"]),
        json={"phone": "9000000099"},
    )
    assert response.status_code == 200
    assert response.json()["phone"] == "9000000099"


def test_patient_history_records_each_changed_field(client, engine, mpr_headers, seeded, patient_id):
    response = client.patch(
        f"/patients/{patient_id}",
        headers=mpr_headers,
        json={"name": "Anita Rao", "age": 45, "email": " Anita@Example.com ", "change_reason": "Corrected at desk"},
    )
    assert response.status_code == 200
    assert response.json()["email"] == "anita@example.com"

    history = client.get(f"/patients/{patient_id}/history", headers=mpr_headers)
    assert history.status_code == 200
    payload = history.json()
    assert payload["count"] == 2
    by_field = {item["field_name"]: item for item in payload["changes"]}
    assert set(by_field) == {"age", "email"}
    assert by_field["age"]["old_value"] == "44"
    assert by_field["age"]["new_value"] == "45"
    assert by_field["email"]["old_value"] is None
    assert by_field["email"]["new_value"] == "anita@example.com"
    assert {item["change_reason"] for item in payload["changes"]} == {"Corrected at desk"}
    assert {item["changed_role"] for item in payload["changes"]} == {"staff"}
    assert len({item["request_id"] for item in payload["changes"]}) == 1
    assert {item["changed_by"] for item in payload["changes"]} == {seeded["users"]["staff"]["id"]}

    with Session(engine) as session:
        audit = session.exec(
            select(AuditLog).where(AuditLog.entity_type == "Patient", AuditLog.action_type == AuditActionType.UPDATE)
        ).one()
        assert payload["changes"][0]["request_id"] in audit.new_values

    missing = client.get("/patients/9999/history", headers=mpr_headers)
    assert missing.status_code == 404


def test_patch_with_unchanged_values_writes_nothing(client, engine, mpr_headers, patient_id):
    response = client.patch(
        f"/patients/{patient_id}",
        headers=mpr_headers,
        json={"name": " Anita Rao ", "phone": "9000000001"},
    )
    assert response.status_code == 200

    with Session(engine) as session:
        assert session.exec(select(PatientChangeLog)).all() == []
        updates = session.exec(select(AuditLog).where(AuditLog.action_type == AuditActionType.UPDATE)).all()
        assert updates == []


def test_patch_rejects_blank_name(client, mpr_headers, patient_id):
    response = client.patch(
        f"/patients/{patient_id}",
        headers=mpr_headers,
        json={"name": "   ", "change_reason": "typo"},
    )
    assert response.status_code == 422


def test_change_log_rows_cannot_be_rewritten(client, engine, mpr_headers, patient_id):
    client.patch(f"/patients/{patient_id}", headers=mpr_headers, json={"address": "Hill Road"})
    with Session(engine) as session:
        row_id = session.exec(select(PatientChangeLog)).one().id

    for statement in (
        "UPDATE patientchangelog SET new_value = 'Elsewhere' WHERE id = :id",
        "DELETE FROM patientchangelog WHERE id = :id",
    ):
        with Session(engine) as session:
            with pytest.raises(DBAPIError, match="AUDIT_INSERT_ONLY"):
                session.exec(text(statement), params={"id": row_id})
            session.rollback()

    with Session(engine) as session:
        assert session.get(PatientChangeLog, row_id).new_value == "Hill Road"
