from typing import Optional, List
from datetime import date, datetime
from sqlmodel import Field, SQLModel, Relationship
from sqlalchemy import Column, JSON, UniqueConstraint
from enum import Enum
import secrets

from pydantic.alias_generators import to_camel


def new_object_id() -> str:
    """24-hex identifier used as primary key for every entity."""
    return secrets.token_hex(12)


class UserType(str, Enum):
    SUPER_ADMIN = "superAdmin"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    RADIOLOGIST = "radiologist"

class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"

class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

class AppointmentPriority(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"

class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"

class ExpenseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"

class ExpenseCategory(str, Enum):
    OPERATIONAL = "operational"
    MAINTENANCE = "maintenance"
    SUPPLIES = "supplies"
    UTILITIES = "utilities"
    SALARY = "salary"
    OTHER = "other"

class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    username: str = Field(unique=True, index=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    user_type: UserType = Field(default=UserType.RECEPTIONIST)
    is_super_admin: bool = Field(default=False)
    is_active: bool = Field(default=True)
    license_id: Optional[str] = Field(default=None, index=True)

    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = Field(default=False)

    reset_password_token: Optional[str] = None  # sha256 of the emailed token
    reset_password_expires: Optional[datetime] = None

    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    privileges: List["PrivilegeGrant"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"lazy": "selectin", "cascade": "all, delete-orphan"}
    )

class PrivilegeGrant(SQLModel, table=True):
    """One granted (module, operation) pair of a user."""
    __table_args__ = (UniqueConstraint("user_id", "module", "operation", name="uq_privilege_grant"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    module: str
    operation: str
    granted_by: Optional[str] = None  # None for system seeds
    granted_at: datetime = Field(default_factory=datetime.utcnow)

    user: Optional[User] = Relationship(back_populates="privileges")


class Representative(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str
    age: int
    business_id: str = Field(unique=True, index=True)
    phone_number: str
    patients_count: int = Field(default=0)
    doctors_count: int = Field(default=0)
    notes: Optional[str] = None
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Doctor(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str
    specialization: str
    license_number: Optional[str] = None
    contact_number: Optional[str] = None
    total_patients_referred: int = Field(default=0)
    total_scans_referred: int = Field(default=0)
    representative_id: Optional[str] = Field(default=None, foreign_key="representative.id", index=True)
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Patient(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str
    date_of_birth: date
    gender: Gender
    phone_number: Optional[str] = None
    social_number: Optional[str] = Field(default=None, unique=True, index=True)
    doctor_referred_id: str = Field(foreign_key="doctor.id", index=True)
    representative_id: Optional[str] = Field(default=None, foreign_key="representative.id", index=True)
    medical_history: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    scans_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    address: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Branch(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(unique=True, index=True)
    location: str
    address: str
    phone: str
    email: str = Field(unique=True)
    manager: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Scan(SQLModel, table=True):
    """Catalog item. ``items`` holds ``{"item": name, "quantity": n}`` line items."""
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(index=True)
    actual_cost: float = Field(ge=0)
    min_price: float = Field(ge=0)
    description: Optional[str] = None
    items: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class StockItem(SQLModel, table=True):
    __tablename__ = "stock"

    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(index=True)
    branch_id: str = Field(foreign_key="branch.id", index=True)
    quantity: int = Field(default=0, ge=0)
    minimum_threshold: int = Field(default=0, ge=0)
    price: float = Field(default=0, ge=0)
    valid_until: datetime
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.minimum_threshold

    @property
    def is_expired(self) -> bool:
        return self.valid_until <= datetime.utcnow()

class Appointment(SQLModel, table=True):
    """``scans`` holds ``{"scan": scan_id, "quantity": n}`` entries."""
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    radiologist_id: str = Field(foreign_key="user.id", index=True)
    branch_id: str = Field(foreign_key="branch.id", index=True)
    patient_id: str = Field(foreign_key="patient.id", index=True)
    scans: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    cost: float = Field(default=0, ge=0)
    price: float = Field(default=0, ge=0)
    profit: float = Field(default=0)
    referred_by_id: str = Field(foreign_key="doctor.id", index=True)
    representative_id: Optional[str] = Field(default=None, foreign_key="representative.id", index=True)
    scheduled_at: datetime = Field(index=True)
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED, index=True)
    priority: AppointmentPriority = Field(default=AppointmentPriority.ROUTINE)
    notes: Optional[str] = None
    pdf_report: Optional[str] = None
    make_huge_sale: bool = Field(default=False)
    custom_price: Optional[float] = None

    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class AuditLog(SQLModel, table=True):
    """Append-only audit trail of mutating operations."""
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    user_id: Optional[str] = Field(default=None, index=True)
    action: AuditAction = Field(index=True)
    entity_kind: str = Field(index=True)
    entity_id: str = Field(index=True)
    changes: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)

class Expense(SQLModel, table=True):
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    date: datetime = Field(default_factory=datetime.utcnow, index=True)
    reason: str
    total_cost: float = Field(ge=0)
    requester: str = Field(index=True)
    category: ExpenseCategory = Field(default=ExpenseCategory.OTHER, index=True)
    description: Optional[str] = None
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)
    status: ExpenseStatus = Field(default=ExpenseStatus.PENDING, index=True)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    is_active: bool = Field(default=True)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# Columns never copied into audit snapshots
SENSITIVE_FIELDS = {"password_hash", "two_factor_secret", "reset_password_token", "reset_password_expires"}


def snapshot(record: SQLModel) -> dict:
    """JSON-safe copy of a row for the audit trail."""
    data = record.model_dump(mode="json", exclude=SENSITIVE_FIELDS)
    return {to_camel(key): value for key, value in data.items()}
