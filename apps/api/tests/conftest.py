import json
import os
import tempfile

# Settings are read once at import time: configure before importing the app
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="radiology-uploads-")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

from datetime import date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from auth import create_access_token
from database import engine
from main import app
from models import Branch, Doctor, Gender, Patient, Representative, Scan, StockItem, UserType
from privileges import grant
from services.accounts import create_account
from services.notification_bus import notification_bus
from services.token_blacklist import token_blacklist

PASSWORD = "Password123"


@pytest.fixture(autouse=True)
def reset_state():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    token_blacklist.clear()
    notification_bus.active_connections.clear()
    yield


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


def bearer(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def factory(user_type=UserType.RECEPTIONIST, privileges=None, **kwargs):
        counter["n"] += 1
        n = counter["n"]
        user = create_account(
            session,
            username=kwargs.pop("username", f"user{n}"),
            name=kwargs.pop("name", f"Test User {n}"),
            email=kwargs.pop("email", f"user{n}@example.com"),
            password=kwargs.pop("password", PASSWORD),
            user_type=user_type,
            license_id=kwargs.pop("license_id", f"LIC-{n}" if user_type == UserType.RADIOLOGIST else None),
        )
        for module, operations in (privileges or {}).items():
            grant(user, module, operations, granted_by=None)
        for key, value in kwargs.items():
            setattr(user, key, value)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return factory


@pytest.fixture
def admin(make_user):
    return make_user(UserType.SUPER_ADMIN, username="admin", email="admin@example.com")


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def radiologist(make_user):
    return make_user(UserType.RADIOLOGIST, username="rad1", name="Dr Radiologist")


@pytest.fixture
def branch(session):
    branch = Branch(
        name="Main Branch",
        location="Downtown",
        address="1 Main Street",
        phone="+1 555 0100",
        email="main@lab.example.com",
        manager="Manager One",
    )
    session.add(branch)
    session.commit()
    session.refresh(branch)
    return branch


@pytest.fixture
def representative(session):
    representative = Representative(name="Rep One", age=35, business_id="BIZ-1", phone_number="+1 555 0101")
    session.add(representative)
    session.commit()
    session.refresh(representative)
    return representative


@pytest.fixture
def doctor(session, representative):
    doctor = Doctor(name="Dr Referrer", specialization="General", representative_id=representative.id)
    session.add(doctor)
    session.commit()
    session.refresh(doctor)
    return doctor


@pytest.fixture
def patient(session, doctor, representative):
    patient = Patient(
        name="Jane Patient",
        date_of_birth=date(1990, 1, 1),
        gender=Gender.FEMALE,
        phone_number="+1 555 0102",
        doctor_referred_id=doctor.id,
        representative_id=representative.id,
    )
    session.add(patient)
    session.commit()
    session.refresh(patient)
    return patient


@pytest.fixture
def make_scan(session):
    def factory(name="MRI Brain", actual_cost=100.0, min_price=300.0, items=None):
        scan = Scan(
            name=name,
            actual_cost=actual_cost,
            min_price=min_price,
            items=items if items is not None else [{"item": "Contrast", "quantity": 2}],
        )
        session.add(scan)
        session.commit()
        session.refresh(scan)
        return scan

    return factory


@pytest.fixture
def make_stock(session):
    def factory(branch, name="Contrast", quantity=10, minimum_threshold=2, valid_days=30):
        item = StockItem(
            name=name,
            branch_id=branch.id,
            quantity=quantity,
            minimum_threshold=minimum_threshold,
            price=5.0,
            valid_until=datetime.utcnow() + timedelta(days=valid_days),
        )
        session.add(item)
        session.commit()
        session.refresh(item)
        return item

    return factory


class FakeSocket:
    """Stands in for a connected WebSocket; keeps every event sent to it"""

    def __init__(self):
        self.sent = []

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self):
        pass
