import secrets

import mongomock
import pytest
from bson.objectid import ObjectId
from fastapi.testclient import TestClient

import main
from auth import create_access_token, default_profile, insert_account
from booking import BookingEngine
from database import create_document, get_db
from delivery import get_otp_transport
from schemas import Account, EntityRef, Hospital, Lab, Test
from settings import PlatformConfig, get_config


class RecordingTransport:
    def __init__(self):
        self.sent = []

    def send(self, phone, code, email=None):
        self.sent.append((phone, code))
        return True


@pytest.fixture
def db():
    return mongomock.MongoClient()["labloom_test"]


@pytest.fixture
def config():
    return PlatformConfig(admin_phone="1234567890", admin_otp="1234")


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(db, config):
    return BookingEngine(db, config)


@pytest.fixture
def client(db, config, transport):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_config] = lambda: config
    main.app.dependency_overrides[get_otp_transport] = lambda: transport
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_account(db):
    counter = {"n": 0}

    def _make(role="patient", approved=True, name=None, phone=None, entity=None, **profile_fields):
        counter["n"] += 1
        profile = default_profile(role, entity)
        for key, value in profile_fields.items():
            setattr(profile, key, value)
        account = Account(
            name=name or f"{role.title()} {counter['n']}",
            phone=phone or f"90000{counter['n']:05d}",
            role=role,
            approved=approved,
            profile=profile,
        )
        account_id = insert_account(db, account)
        return db["account"].find_one({"_id": ObjectId(account_id)})

    return _make


@pytest.fixture
def doctor(make_account):
    return make_account("doctor", specialization="Cardiology", verification_status="approved")


@pytest.fixture
def patient(make_account):
    return make_account("patient")


@pytest.fixture
def lab_test(db):
    test_id = create_document(db, "test", Test(name="Complete Blood Count", category="Blood", price=300,
                                               duration="15 mins"))
    return test_id


@pytest.fixture
def make_facility(db, make_account):
    def _make(kind="lab", status="approved", name=None):
        model = Lab if kind == "lab" else Hospital
        facility_id = create_document(db, kind, model(
            name=name or f"City {kind.title()}",
            registration_number=f"REG-{kind}-{secrets.token_hex(4)}",
            phone="0800000000",
            verification_status=status,
        ))
        account = make_account(kind, approved=status == "approved", entity=EntityRef(kind=kind, id=facility_id))
        return db[kind].find_one({"_id": ObjectId(facility_id)}), account

    return _make


@pytest.fixture
def auth_header(config):
    def _header(account):
        return {"Authorization": f"Bearer {create_access_token(account, config)}"}

    return _header
