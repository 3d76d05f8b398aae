from typing import Optional, List, Literal
from typing_extensions import Annotated
from datetime import date, datetime
from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from models import (
    AppointmentPriority,
    AppointmentStatus,
    AuditAction,
    ExpenseCategory,
    ExpenseStatus,
    Gender,
    PaymentMethod,
    User,
    UserType,
)
from privileges import privileges_by_module
from validators.business_rules import get_business_rules
from validators.password_validator import validate_password
from validators.time_validator import format_utc, to_naive_utc, validate_in_future

_rules = get_business_rules()

ObjectId = Annotated[str, StringConstraints(pattern=r"^[0-9a-fA-F]{24}$")]
TotpCode = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d{6}$")]
PhoneNumber = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\+?[0-9\s\-()]{7,20}$")]
UtcDatetime = Annotated[datetime, PlainSerializer(format_utc, return_type=str, when_used="json")]


class CamelModel(BaseModel):
    """Request body: camelCase on the wire, snake_case in code"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Auth schemas
class RegisterRequest(CamelModel):
    username: str = Field(min_length=3, max_length=30)
    name: str = Field(min_length=3, max_length=100)
    email: EmailStr
    password: str
    role: Literal["doctor", "receptionist", "radiologist"] = "receptionist"
    license_id: Optional[str] = Field(default=None, max_length=50)

    @field_validator("password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return validate_password(value)

class VerifyRegistration2FARequest(CamelModel):
    user_id: ObjectId
    token: TotpCode

class LoginRequest(CamelModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

class VerifyLogin2FARequest(CamelModel):
    two_factor_token: str = Field(min_length=1)
    token: str = Field(min_length=1)

class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(min_length=1)

class ForgotPasswordRequest(CamelModel):
    email: EmailStr

class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1)
    password: str

    @field_validator("password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return validate_password(value)

class ChangePasswordRequest(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return validate_password(value)

class Enable2FARequest(CamelModel):
    password: str = Field(min_length=1)

class Verify2FARequest(CamelModel):
    token: TotpCode

class Disable2FARequest(CamelModel):
    password: str = Field(min_length=1)
    token: TotpCode


class PrivilegeResponse(ResponseModel):
    module: str
    operations: List[str]
    granted_by: Optional[str] = None
    granted_at: Optional[UtcDatetime] = None

class UserResponse(ResponseModel):
    id: str
    username: str
    name: str
    email: str
    user_type: UserType
    is_super_admin: bool
    is_active: bool
    two_factor_enabled: bool
    license_id: Optional[str] = None
    last_login: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    privileges: List[PrivilegeResponse] = []

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        data = {name: getattr(user, name) for name in cls.model_fields if name != "privileges"}
        data["privileges"] = privileges_by_module(user)
        return cls.model_validate(data)


# User management schemas
class UserUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    email: Optional[EmailStr] = None
    user_type: Optional[UserType] = None
    is_active: Optional[bool] = None
    is_super_admin: Optional[bool] = None
    license_id: Optional[str] = Field(default=None, max_length=50)

class PrivilegeGrantRequest(CamelModel):
    module: str
    operations: List[str] = Field(min_length=1)

class PrivilegeRevokeRequest(CamelModel):
    module: str
    operations: Optional[List[str]] = None

class RadiologistCreate(CamelModel):
    username: str = Field(min_length=3, max_length=30)
    name: str = Field(min_length=3, max_length=100)
    email: EmailStr
    password: str
    license_id: str = Field(min_length=1, max_length=50)

    @field_validator("password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return validate_password(value)


# Appointment schemas
class AppointmentScanInput(CamelModel):
    scan: ObjectId
    quantity: int = Field(default=1, ge=1, strict=True)

class AppointmentCreate(CamelModel):
    radiologist_id: ObjectId
    patient_id: ObjectId
    branch_id: ObjectId
    scans: List[AppointmentScanInput] = Field(min_length=1)
    scheduled_at: datetime
    notes: Optional[str] = Field(default=None, max_length=_rules.MAX_NOTES_LENGTH)
    priority: AppointmentPriority = AppointmentPriority.ROUTINE
    make_huge_sale: bool = False
    custom_price: Optional[float] = None

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_in_future(cls, value: datetime) -> datetime:
        return validate_in_future(value)

class AppointmentUpdate(CamelModel):
    radiologist_id: Optional[ObjectId] = None
    patient_id: Optional[ObjectId] = None
    scans: Optional[List[AppointmentScanInput]] = Field(default=None, min_length=1)
    scheduled_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=_rules.MAX_NOTES_LENGTH)
    priority: Optional[AppointmentPriority] = None
    make_huge_sale: Optional[bool] = None
    custom_price: Optional[float] = None

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_in_future(cls, value: Optional[datetime]) -> Optional[datetime]:
        return validate_in_future(value) if value is not None else None

class AppointmentStatusUpdate(CamelModel):
    status: AppointmentStatus
    notes: Optional[str] = Field(default=None, max_length=_rules.MAX_NOTES_LENGTH)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)

class AppointmentScanResponse(BaseModel):
    scan: str
    quantity: int

class AppointmentResponse(ResponseModel):
    id: str
    radiologist_id: str
    branch_id: str
    patient_id: str
    scans: List[AppointmentScanResponse]
    cost: float
    price: float
    profit: float
    referred_by_id: str = Field(serialization_alias="referredBy")
    representative_id: Optional[str] = Field(default=None, serialization_alias="representative")
    scheduled_at: UtcDatetime
    status: AppointmentStatus
    priority: AppointmentPriority
    notes: Optional[str] = None
    pdf_report: Optional[str] = None
    make_huge_sale: bool
    custom_price: Optional[float] = None
    cancelled_at: Optional[UtcDatetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Stock schemas
class StockCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    branch: ObjectId
    quantity: int = Field(ge=0, strict=True)
    minimum_threshold: int = Field(default=0, ge=0, strict=True)
    price: float = Field(default=0, ge=0)
    valid_until: datetime

    @field_validator("valid_until")
    @classmethod
    def valid_until_in_future(cls, value: datetime) -> datetime:
        return validate_in_future(value, "Valid until date must be in the future")

    @model_validator(mode="after")
    def threshold_within_quantity(self):
        if self.minimum_threshold > self.quantity:
            raise ValueError("Minimum threshold cannot exceed quantity")
        return self

class StockUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    quantity: Optional[int] = Field(default=None, ge=0, strict=True)
    minimum_threshold: Optional[int] = Field(default=None, ge=0, strict=True)
    price: Optional[float] = Field(default=None, ge=0)
    valid_until: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def normalise_valid_until(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None

class StockQuantityUpdate(CamelModel):
    quantity: int = Field(ge=1, strict=True)
    operation: Literal["add", "subtract"]

class StockResponse(ResponseModel):
    id: str
    name: str
    branch_id: str = Field(serialization_alias="branch")
    quantity: int
    minimum_threshold: int
    price: float
    valid_until: UtcDatetime
    is_active: bool
    is_low_stock: bool
    is_expired: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Expense schemas
class ExpenseCreate(CamelModel):
    date: Optional[datetime] = None
    reason: str = Field(min_length=3, max_length=500)
    total_cost: float = Field(ge=0)
    requester: str = Field(min_length=2, max_length=100)
    category: ExpenseCategory = ExpenseCategory.OTHER
    description: Optional[str] = Field(default=None, max_length=1000)
    payment_method: PaymentMethod = PaymentMethod.CASH

class ExpenseUpdate(CamelModel):
    date: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, min_length=3, max_length=500)
    total_cost: Optional[float] = Field(default=None, ge=0)
    requester: Optional[str] = Field(default=None, min_length=2, max_length=100)
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    payment_method: Optional[PaymentMethod] = None

class ExpenseResponse(ResponseModel):
    id: str
    date: UtcDatetime
    reason: str
    total_cost: float
    requester: str
    category: ExpenseCategory
    description: Optional[str] = None
    payment_method: PaymentMethod
    status: ExpenseStatus
    approved_by: Optional[str] = None
    approved_at: Optional[UtcDatetime] = None
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Audit schemas
class AuditLogResponse(ResponseModel):
    id: str
    user_id: Optional[str] = Field(default=None, serialization_alias="user")
    action: AuditAction
    entity_kind: str
    entity_id: str
    changes: Optional[dict] = None
    created_at: UtcDatetime = Field(serialization_alias="timestamp")


# Reference data schemas
class Address(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

class PatientCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    date_of_birth: date
    gender: Gender
    phone_number: Optional[PhoneNumber] = None
    social_number: Optional[str] = Field(default=None, min_length=5, max_length=20)
    doctor_referred: ObjectId
    representative: Optional[ObjectId] = None
    medical_history: List[str] = []
    address: Optional[Address] = None

    @field_validator("date_of_birth")
    @classmethod
    def not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("Date of birth cannot be in the future")
        return value

class PatientUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    phone_number: Optional[PhoneNumber] = None
    social_number: Optional[str] = Field(default=None, min_length=5, max_length=20)
    doctor_referred: Optional[ObjectId] = None
    representative: Optional[ObjectId] = None
    medical_history: Optional[List[str]] = None
    address: Optional[Address] = None

    @field_validator("date_of_birth")
    @classmethod
    def not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("Date of birth cannot be in the future")
        return value

class PatientResponse(ResponseModel):
    id: str
    name: str
    date_of_birth: date
    gender: Gender
    phone_number: Optional[str] = None
    social_number: Optional[str] = None
    doctor_referred_id: str = Field(serialization_alias="doctorReferred")
    representative_id: Optional[str] = Field(default=None, serialization_alias="representative")
    medical_history: List[str] = []
    scans_history: List[dict] = []
    address: Optional[dict] = None
    is_active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime

class DoctorCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    specialization: str = Field(min_length=1, max_length=100)
    license_number: Optional[str] = Field(default=None, max_length=50)
    contact_number: Optional[PhoneNumber] = None
    representative: Optional[ObjectId] = None

class DoctorUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    specialization: Optional[str] = Field(default=None, min_length=1, max_length=100)
    license_number: Optional[str] = Field(default=None, max_length=50)
    contact_number: Optional[PhoneNumber] = None
    representative: Optional[ObjectId] = None
    is_active: Optional[bool] = None

class DoctorResponse(ResponseModel):
    id: str
    name: str
    specialization: str
    license_number: Optional[str] = None
    contact_number: Optional[str] = None
    total_patients_referred: int
    total_scans_referred: int
    representative_id: Optional[str] = Field(default=None, serialization_alias="representative")
    is_active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime

class RepresentativeCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    age: int = Field(ge=18, le=100)
    business_id: str = Field(min_length=1, max_length=50)
    phone_number: PhoneNumber
    notes: Optional[str] = Field(default=None, max_length=500)

class RepresentativeUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    age: Optional[int] = Field(default=None, ge=18, le=100)
    business_id: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone_number: Optional[PhoneNumber] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None

class RepresentativeResponse(ResponseModel):
    id: str
    name: str
    age: int
    business_id: str
    phone_number: str
    patients_count: int
    doctors_count: int
    notes: Optional[str] = None
    is_active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime

class BranchCreate(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    location: str = Field(min_length=1, max_length=200)
    address: str = Field(min_length=1, max_length=500)
    phone: PhoneNumber
    email: EmailStr
    manager: str = Field(min_length=1, max_length=100)

class BranchUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    location: Optional[str] = Field(default=None, min_length=1, max_length=200)
    address: Optional[str] = Field(default=None, min_length=1, max_length=500)
    phone: Optional[PhoneNumber] = None
    email: Optional[EmailStr] = None
    manager: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_active: Optional[bool] = None

class BranchResponse(ResponseModel):
    id: str
    name: str
    location: str
    address: str
    phone: str
    email: str
    manager: str
    is_active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime

class ScanLineItem(CamelModel):
    item: str = Field(min_length=1, max_length=100)
    quantity: int = Field(ge=1, strict=True)

class ScanCreate(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    actual_cost: float = Field(ge=0)
    min_price: float = Field(ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    items: List[ScanLineItem] = Field(min_length=1)
    images: List[str] = []

class ScanUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    actual_cost: Optional[float] = Field(default=None, ge=0)
    min_price: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    items: Optional[List[ScanLineItem]] = Field(default=None, min_length=1)
    images: Optional[List[str]] = None

class ScanResponse(ResponseModel):
    id: str
    name: str
    actual_cost: float
    min_price: float
    description: Optional[str] = None
    items: List[dict]
    images: List[str] = []
    is_active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime
