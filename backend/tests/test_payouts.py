from datetime import date, timedelta

import pytest
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select, text

from models import AuditActionType, AuditLog, DoctorPayout, PayoutMethod
from services.errors import PayoutPaidError
from services.payouts import mark_payout_paid
from tests.conftest import with_branch


def _period() -> dict:
    today = date.today()
    return {"period_start": str(today - timedelta(days=1)), "period_end": str(today + timedelta(days=1))}


@pytest.fixture
def owner_mpr(owner_headers, seeded):
    return with_branch(owner_headers, seeded["branches"]["MPR"])


@pytest.fixture
def admin_mpr(admin_headers, seeded):
    return with_branch(admin_headers, seeded["branches"]["MPR"])


@pytest.fixture
def referred_visit(client, mpr_headers, seeded, patient_id):
    """A finalized CBC + HB visit referred by the seeded doctor."""
    response = client.post(
        "/visits/diagnostic",
        headers=mpr_headers,
        json={
            "patient_id": patient_id,
            "test_ids": [seeded["tests"]["CBC"], seeded["tests"]["HB"]],
            "referral_doctor_id": seeded["referral_doctor_id"],
        },
    )
    assert response.status_code == 201, response.text
    visit = response.json()
    assert client.post(f"/visits/diagnostic/{visit['id']}/finalize", headers=mpr_headers).status_code == 200
    return visit


@pytest.fixture
def payout(client, owner_mpr, seeded, referred_visit):
    response = client.post(
        "/payouts/derive",
        headers=owner_mpr,
        json={"referral_doctor_id": seeded["referral_doctor_id"], **_period()},
    )
    assert response.status_code == 201, response.text
    return response.json()["payout"]


def test_derive_stores_one_row_per_period(client, engine, owner_mpr, seeded, referred_visit):
    body = {"referral_doctor_id": seeded["referral_doctor_id"], **_period()}
    first = client.post("/payouts/derive", headers=owner_mpr, json=body)
    assert first.status_code == 201, first.text
    assert first.json()["is_new"] is True
    derived = first.json()["payout"]
    assert derived["derived_amount_in_paise"] == 3500 + 800
    assert derived["doctor_name"] == "Dr. Sharma"
    assert derived["is_paid"] is False
    assert {item["visit_id"] for item in derived["line_items"]} == {referred_visit["id"]}

    again = client.post("/payouts/derive", headers=owner_mpr, json=body)
    assert again.status_code == 200
    assert again.json()["is_new"] is False
    assert again.json()["payout"]["id"] == derived["id"]

    with Session(engine) as session:
        assert len(session.exec(select(DoctorPayout)).all()) == 1
        entries = session.exec(
            select(AuditLog).where(AuditLog.action_type == AuditActionType.PAYOUT_DERIVE)
        ).all()
        assert [entry.entity_id for entry in entries] == [str(derived["id"])]


def test_derive_is_owner_only(client, admin_mpr, mpr_headers, seeded):
    body = {"referral_doctor_id": seeded["referral_doctor_id"], **_period()}
    assert client.post("/payouts/derive", headers=admin_mpr, json=body).status_code == 403
    assert client.post("/payouts/derive", headers=mpr_headers, json=body).status_code == 403


def test_derive_validation(client, owner_mpr, seeded):
    today = date.today()
    inverted = client.post(
        "/payouts/derive",
        headers=owner_mpr,
        json={
            "referral_doctor_id": seeded["referral_doctor_id"],
            "period_start": str(today),
            "period_end": str(today - timedelta(days=3)),
        },
    )
    assert inverted.status_code == 400
    assert inverted.json()["error"] == "VALIDATION_ERROR"

    unknown = client.post("/payouts/derive", headers=owner_mpr, json={"referral_doctor_id": 9999, **_period()})
    assert unknown.status_code == 404


def test_list_and_detail(client, admin_mpr, mpr_headers, referred_visit, payout):
    listing = client.get("/payouts", headers=admin_mpr)
    assert listing.status_code == 200
    assert listing.json()["count"] == 1
    assert listing.json()["payouts"][0]["id"] == payout["id"]
    assert "line_items" not in listing.json()["payouts"][0]

    assert client.get("/payouts", headers=admin_mpr, params={"is_paid": "true"}).json()["count"] == 0
    assert client.get("/payouts", headers=admin_mpr, params={"is_paid": "false"}).json()["count"] == 1

    detail = client.get(f"/payouts/{payout['id']}", headers=admin_mpr)
    assert detail.status_code == 200
    assert detail.json()["line_items"][0]["visit_id"] == referred_visit["id"]
    assert detail.json()["payment_reference_id"] is None

    assert client.get("/payouts", headers=mpr_headers).status_code == 403


def test_payout_of_another_branch_is_not_found(client, admin_headers, seeded, payout):
    kpy = with_branch(admin_headers, seeded["branches"]["KPY"])
    assert client.get(f"/payouts/{payout['id']}", headers=kpy).status_code == 404
    paid = client.post(f"/payouts/{payout['id']}/mark-paid", headers=kpy, json={"payment_method": "CASH"})
    assert paid.status_code == 404
    assert client.get("/payouts", headers=kpy).json()["count"] == 0


def test_mark_paid_once(client, engine, admin_mpr, seeded, payout):
    response = client.post(
        f"/payouts/{payout['id']}/mark-paid",
        headers=admin_mpr,
        json={"payment_method": "ONLINE", "payment_reference_id": " UTR-4411 ", "notes": "October settlement"},
    )
    assert response.status_code == 200, response.text
    paid = response.json()
    assert paid["is_paid"] is True
    assert paid["paid_at"] is not None
    assert paid["payment_method"] == "ONLINE"
    assert paid["payment_reference_id"] == "UTR-4411"
    assert paid["derived_amount_in_paise"] == payout["derived_amount_in_paise"]

    again = client.post(f"/payouts/{payout['id']}/mark-paid", headers=admin_mpr, json={"payment_method": "CASH"})
    assert again.status_code == 409
    assert again.json()["error"] == "PAYOUT_PAID"

    with Session(engine) as session:
        stored = session.get(DoctorPayout, payout["id"])
        assert stored.payment_method == PayoutMethod.ONLINE
        entries = session.exec(select(AuditLog).where(AuditLog.action_type == AuditActionType.PAYOUT_PAID)).all()
        assert len(entries) == 1
        assert entries[0].user_id == seeded["users"]["admin"]["id"]


def test_mark_paid_rejects_unknown_method(client, admin_mpr, payout):
    response = client.post(f"/payouts/{payout['id']}/mark-paid", headers=admin_mpr, json={"payment_method": "BARTER"})
    assert response.status_code == 422


def test_stale_copy_cannot_pay_twice(engine, seeded, payout):
    with Session(engine) as first, Session(engine) as second:
        fresh = first.get(DoctorPayout, payout["id"])
        stale = second.get(DoctorPayout, payout["id"])
        mark_payout_paid(first, fresh, payment_method=PayoutMethod.CASH, actor_id=None)
        with pytest.raises(PayoutPaidError):
            mark_payout_paid(second, stale, payment_method=PayoutMethod.CHEQUE, actor_id=None)

    with Session(engine) as session:
        assert session.get(DoctorPayout, payout["id"]).payment_method == PayoutMethod.CASH
        paid_rows = session.exec(select(AuditLog).where(AuditLog.action_type == AuditActionType.PAYOUT_PAID)).all()
        assert len(paid_rows) == 1


def test_orm_cannot_edit_paid_payout(client, engine, admin_mpr, payout):
    client.post(f"/payouts/{payout['id']}/mark-paid", headers=admin_mpr, json={"payment_method": "CASH"})
    with Session(engine) as session:
        stored = session.get(DoctorPayout, payout["id"])
        stored.notes = "rewritten"
        session.add(stored)
        with pytest.raises(PayoutPaidError):
            session.commit()
        session.rollback()

    with Session(engine) as session:
        stored = session.get(DoctorPayout, payout["id"])
        session.delete(stored)
        with pytest.raises(PayoutPaidError):
            session.commit()
        session.rollback()

    with Session(engine) as session:
        assert session.get(DoctorPayout, payout["id"]).notes is None


def test_raw_sql_cannot_touch_paid_payout(client, engine, admin_mpr, payout):
    client.post(f"/payouts/{payout['id']}/mark-paid", headers=admin_mpr, json={"payment_method": "CASH"})
    for statement in (
        "UPDATE doctorpayout SET notes = 'rewritten' WHERE id = :id",
        "UPDATE doctorpayout SET paid_at = NULL WHERE id = :id",
        "DELETE FROM doctorpayout WHERE id = :id",
    ):
        with Session(engine) as session:
            with pytest.raises(DBAPIError, match="PAYOUT_FROZEN"):
                session.exec(text(statement), params={"id": payout["id"]})
            session.rollback()

    with Session(engine) as session:
        assert session.get(DoctorPayout, payout["id"]).paid_at is not None


def test_raw_sql_cannot_change_derived_amount(engine, payout):
    with Session(engine) as session:
        with pytest.raises(DBAPIError, match="PAYOUT_FROZEN"):
            session.exec(
                text("UPDATE doctorpayout SET derived_amount_in_paise = 1 WHERE id = :id"),
                params={"id": payout["id"]},
            )
        session.rollback()

    with Session(engine) as session:
        assert session.get(DoctorPayout, payout["id"]).derived_amount_in_paise == payout["derived_amount_in_paise"]
