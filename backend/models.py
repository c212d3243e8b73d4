from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    STAFF = "staff"


class VisitDomain(str, Enum):
    DIAGNOSTICS = "DIAGNOSTICS"


class VisitStatus(str, Enum):
    DRAFT = "DRAFT"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"


class ReportStatus(str, Enum):
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"


class PaymentType(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class PayoutMethod(str, Enum):
    CASH = "CASH"
    ONLINE = "ONLINE"
    CHEQUE = "CHEQUE"


class PatientChangeType(str, Enum):
    IDENTITY = "IDENTITY"
    NON_IDENTITY = "NON_IDENTITY"


class AuditActionType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    FINALIZE = "FINALIZE"
    PAYOUT_DERIVE = "PAYOUT_DERIVE"
    PAYOUT_PAID = "PAYOUT_PAID"


class Branch(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str = Field(unique=True, index=True)
    address: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UserBranch(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "branch_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    branch_id: int = Field(foreign_key="branch.id")


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_number: str = Field(unique=True, index=True)
    name: str
    age: int
    gender: str
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class PatientChangeLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    field_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    change_type: PatientChangeType
    change_reason: Optional[str] = None
    changed_by: int = Field(foreign_key="user.id")
    changed_role: str
    request_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LabTest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str = Field(unique=True, index=True)
    price_in_paise: int = Field(ge=0)
    reference_min: Optional[float] = None
    reference_max: Optional[float] = None
    reference_unit: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ReferralDoctor(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_number: str = Field(unique=True, index=True)
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    commission_percent: float = 0.0
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DoctorPayout(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("referral_doctor_id", "branch_id", "period_start", "period_end"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    referral_doctor_id: int = Field(foreign_key="referraldoctor.id", index=True)
    branch_id: int = Field(foreign_key="branch.id", index=True)
    period_start: datetime
    period_end: datetime
    derived_amount_in_paise: int = 0
    derived_at: datetime = Field(default_factory=datetime.utcnow)
    derived_by: Optional[int] = Field(default=None, foreign_key="user.id")
    paid_at: Optional[datetime] = None
    payment_method: Optional[PayoutMethod] = None
    payment_reference_id: Optional[str] = None
    notes: Optional[str] = None


class NumberSequence(SQLModel, table=True):
    id: str = Field(primary_key=True)
    prefix: str = Field(index=True)
    last_value: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Visit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    branch_id: int = Field(foreign_key="branch.id", index=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    referral_doctor_id: Optional[int] = Field(default=None, foreign_key="referraldoctor.id")
    domain: VisitDomain = VisitDomain.DIAGNOSTICS
    status: VisitStatus = VisitStatus.DRAFT
    bill_number: str = Field(index=True)
    total_amount_in_paise: int = 0
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Bill(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("branch_id", "bill_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="visit.id", unique=True)
    branch_id: int = Field(foreign_key="branch.id")
    bill_number: str
    total_amount_in_paise: int = 0
    payment_type: PaymentType = PaymentType.CASH
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TestOrder(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="visit.id", index=True)
    test_id: int = Field(foreign_key="labtest.id")
    branch_id: int = Field(foreign_key="branch.id", index=True)
    test_name: str
    test_code: str
    price_in_paise: int
    reference_min: Optional[float] = None
    reference_max: Optional[float] = None
    reference_unit: Optional[str] = None
    referral_commission_percent: float = 0.0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DiagnosticReport(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="visit.id", unique=True)
    branch_id: int = Field(foreign_key="branch.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ReportVersion(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("report_id", "version_num"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: int = Field(foreign_key="diagnosticreport.id", index=True)
    version_num: int = Field(ge=1)
    status: ReportStatus = ReportStatus.DRAFT
    finalized_at: Optional[datetime] = None
    finalized_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class TestResult(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("report_version_id", "test_order_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    report_version_id: int = Field(foreign_key="reportversion.id", index=True)
    test_order_id: int = Field(foreign_key="testorder.id")
    value: float
    flag: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    branch_id: Optional[int] = Field(default=None, foreign_key="branch.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    action_type: AuditActionType
    entity_type: str
    entity_id: str
    old_values: Optional[str] = None
    new_values: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
