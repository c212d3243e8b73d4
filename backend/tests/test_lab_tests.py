from sqlmodel import Session, select

from models import TestOrder
from tests.conftest import with_branch


def test_list_lab_tests(client, staff_headers, seeded):
    response = client.get("/lab-tests", headers=staff_headers)
    assert response.status_code == 200
    codes = {item["code"] for item in response.json()}
    assert codes == {"CBC", "HB", "LFT"}


def test_catalog_writes_need_owner_or_admin(client, mpr_headers):
    response = client.post(
        "/lab-tests",
        headers=mpr_headers,
        json={"name": "Vitamin D", "code": "VITD", "price_in_paise": 120000},
    )
    assert response.status_code == 403


def test_create_update_and_deactivate_lab_test(client, admin_headers, seeded):
    headers = with_branch(admin_headers, seeded["branches"]["MPR"])
    created = client.post(
        "/lab-tests",
        headers=headers,
        json={
            "name": "Vitamin D",
            "code": " vitd ",
            "price_in_paise": 120000,
            "reference_range": {"min": 30, "max": 100, "unit": "ng/mL"},
        },
    )
    assert created.status_code == 201, created.text
    test = created.json()
    assert test["code"] == "VITD"
    assert test["reference_range"]["unit"] == "ng/mL"

    duplicate = client.post(
        "/lab-tests",
        headers=headers,
        json={"name": "Vitamin D again", "code": "VITD", "price_in_paise": 1},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "CONFLICT"

    updated = client.patch(f"/lab-tests/{test['id']}", headers=headers, json={"price_in_paise": 99000})
    assert updated.status_code == 200
    assert updated.json()["price_in_paise"] == 99000
    assert updated.json()["reference_range"]["max"] == 100

    removed = client.delete(f"/lab-tests/{test['id']}", headers=headers)
    assert removed.status_code == 200

    active = {item["code"] for item in client.get("/lab-tests", headers=headers).json()}
    assert "VITD" not in active
    everything = {item["code"] for item in client.get("/lab-tests?include_inactive=true", headers=headers).json()}
    assert "VITD" in everything


def test_unknown_lab_test(client, admin_headers, seeded):
    headers = with_branch(admin_headers, seeded["branches"]["MPR"])
    response = client.patch("/lab-tests/9999", headers=headers, json={"price_in_paise": 1})
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_price_change_never_rewrites_existing_orders(client, engine, owner_headers, mpr_headers, seeded, visit):
    owner_mpr = with_branch(owner_headers, seeded["branches"]["MPR"])
    cbc_id = seeded["tests"]["CBC"]
    response = client.patch(
        f"/lab-tests/{cbc_id}",
        headers=owner_mpr,
        json={"price_in_paise": 50000, "name": "CBC with ESR"},
    )
    assert response.status_code == 200

    with Session(engine) as session:
        order = session.exec(
            select(TestOrder).where(TestOrder.visit_id == visit["id"], TestOrder.test_id == cbc_id)
        ).one()
        assert order.price_in_paise == 35000
        assert order.test_name == "Complete Blood Count"

    detail = client.get(f"/visits/diagnostic/{visit['id']}", headers=mpr_headers).json()
    assert detail["total_amount_in_paise"] == 43000
    bill = client.get(f"/bills/{visit['id']}", headers=mpr_headers).json()
    assert [item["price_in_paise"] for item in bill["items"]] == [35000, 8000]

    fresh = client.post(
        "/visits/diagnostic",
        headers=mpr_headers,
        json={"patient_id": visit["patient"]["id"], "test_ids": [cbc_id]},
    )
    assert fresh.json()["total_amount_in_paise"] == 50000
