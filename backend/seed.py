import os

from sqlmodel import Session, select

from database import engine, create_db
from models import Branch, LabTest, Patient, ReferralDoctor, User, UserBranch, UserRole
from services.auth import hash_password
from services.sequence import generate_patient_number, generate_referral_doctor_number

DEMO_BRANCHES = [
    {"name": "Labdesk - Madhapur", "code": "MPR", "address": "Plot 12, Madhapur Main Road"},
    {"name": "Labdesk - Kukatpally", "code": "KPY", "address": "KPHB Colony, Phase 3"},
]

DEMO_USERS = [
    {
        "name": "Owner Lakshmi",
        "email": "owner@labdesk.local",
        "password": "owner123",
        "role": UserRole.OWNER,
        "branches": [],
    },
    {
        "name": "Admin Sahana",
        "email": "admin@labdesk.local",
        "password": "admin123",
        "role": UserRole.ADMIN,
        "branches": ["MPR", "KPY"],
    },
    {
        "name": "Front Desk Rajesh",
        "email": "staff@labdesk.local",
        "password": "staff123",
        "role": UserRole.STAFF,
        "branches": ["MPR"],
    },
]

DEMO_TESTS = [
    {"name": "Complete Blood Count", "code": "CBC", "price_in_paise": 35000},
    {"name": "Thyroid Profile", "code": "THYROID", "price_in_paise": 50000},
    {"name": "Lipid Profile", "code": "LIPID", "price_in_paise": 45000},
    {
        "name": "Blood Sugar (Fasting)",
        "code": "FBS",
        "price_in_paise": 10000,
        "reference_min": 70,
        "reference_max": 100,
        "reference_unit": "mg/dL",
    },
    {
        "name": "Hemoglobin",
        "code": "HB",
        "price_in_paise": 8000,
        "reference_min": 12,
        "reference_max": 17,
        "reference_unit": "g/dL",
    },
    {"name": "Urine Routine", "code": "URINE", "price_in_paise": 15000},
    {"name": "Liver Function Test", "code": "LFT", "price_in_paise": 55000},
    {"name": "Kidney Function Test", "code": "KFT", "price_in_paise": 50000},
]

DEMO_REFERRAL_DOCTORS = [
    {"name": "Dr. Sharma", "phone": "9876500001", "commission_percent": 10.0},
    {"name": "Dr. Mehra", "phone": "9876500002", "commission_percent": 12.0},
]


def run_seed(seed_patient: bool = False):
    create_db()

    with Session(engine) as session:
        if session.exec(select(User)).first():
            print("Database already seeded. Skipping.")
            return

        branches_by_code: dict[str, Branch] = {}
        for spec in DEMO_BRANCHES:
            branch = Branch(**spec)
            session.add(branch)
            session.commit()
            session.refresh(branch)
            branches_by_code[branch.code] = branch
            print(f"Created branch: {branch.code} ({branch.name})")

        for spec in DEMO_USERS:
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            for code in spec["branches"]:
                session.add(UserBranch(user_id=user.id, branch_id=branches_by_code[code].id))
            session.commit()
            print(f"Created user: {user.email} ({user.role.value})")

        for spec in DEMO_TESTS:
            session.add(LabTest(**spec))
        session.commit()
        print(f"Created {len(DEMO_TESTS)} lab tests")

        for spec in DEMO_REFERRAL_DOCTORS:
            session.add(ReferralDoctor(doctor_number=generate_referral_doctor_number(engine), **spec))
            session.commit()
        print(f"Created {len(DEMO_REFERRAL_DOCTORS)} referral doctors")

        if seed_patient:
            patient = Patient(
                patient_number=generate_patient_number(engine),
                name="Demo Patient",
                age=42,
                gender="Female",
                phone="9000000001",
            )
            session.add(patient)
            session.commit()
            session.refresh(patient)
            print(f"Created patient: {patient.name} ({patient.patient_number})")

        print("Demo credentials:")
        for spec in DEMO_USERS:
            print(f"  {spec['email']} / {spec['password']}")
        print("Seed complete.")


if __name__ == "__main__":
    run_seed(seed_patient=os.getenv("LABDESK_SEED_DEMO_DATA", "0") == "1")
