import os

# Must be set before the app modules build their engine and settings.
os.environ["DATABASE_URL"] = "sqlite:///./test_api.db"
os.environ["INFERENCE_API_KEY"] = ""
os.environ["SYNC_MODE"] = "push"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.db import Base, get_db
from app.core.identity import Actor
from app.core.lifecycle import IssueLifecycle
from app.core.notifier import NotificationHub
from app.main import app
from app.repositories.store import InMemoryRepairStore
from app.schemas.issue import Capability, DeviceType, Diagnosis
from app.services.inference import get_inference
from app.services.payments import MockPaymentProvider, get_payment_provider

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_api.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SUBMITTER = Actor(id="user-1", display_name="Asha", capability=Capability.SUBMITTER)
OTHER_SUBMITTER = Actor(id="user-2", display_name="Kabir", capability=Capability.SUBMITTER)
EXPERT = Actor(id="expert-1", display_name="Ravi", capability=Capability.EXPERT)


def build_diagnosis(**overrides) -> Diagnosis:
    fields = {
        "device_type": "Fan",
        "likely_causes": ["Loose blade screws", "Worn bearings"],
        "safety_warning": "Switch off the fan at the mains before touching it.",
        "troubleshooting_steps": ["Tighten the blade screws", "Oil the motor bearings"],
        "recommended_action": "remote consult",
        "estimated_cost": "₹300-₹800",
    }
    fields.update(overrides)
    return Diagnosis(**fields)


class FakeInference:
    def __init__(self):
        self.diagnosis = build_diagnosis()
        self.reply_text = "Please check whether the blades wobble when the fan runs."
        self.fail_with = None
        self.diagnose_calls = []
        self.conversations = []

    def diagnose(self, media_url, description):
        self.diagnose_calls.append((media_url, description))
        if self.fail_with is not None:
            raise self.fail_with
        return self.diagnosis

    def reply(self, conversation):
        self.conversations.append(conversation)
        if self.fail_with is not None:
            raise self.fail_with
        return self.reply_text

    def detect_device(self, media_url):
        return DeviceType.FAN, "Ceiling fan with a bent blade"


class RecordingNotifier:
    def __init__(self):
        self.batches = []

    def publish_many(self, events):
        self.batches.append(list(events))

    @property
    def events(self):
        return [event for batch in self.batches for event in batch]


@pytest.fixture(scope="function")
def db_session():
    # Create the tables
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        # Drop the tables after the test
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
    return InMemoryRepairStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(store, notifier):
    return IssueLifecycle(store, notifier=notifier, consultation_price=19900, currency="INR")


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def payment_provider():
    return MockPaymentProvider()


@pytest.fixture
def diagnosis():
    return build_diagnosis()


@pytest.fixture
def open_issue(lifecycle):
    return lifecycle.create_issue(
        owner_id=SUBMITTER.id,
        description="Fan makes loud noise",
        device_type="Fan",
        media_url="https://media.example/fan.jpg",
        media_kind="photo",
    )


@pytest.fixture
def client(db_session, inference, payment_provider):
    def override_get_db():
        try:
            db = TestingSessionLocal()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_inference] = lambda: inference
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    app.state.session_factory = TestingSessionLocal
    app.state.notifier = NotificationHub(queue_size=100)
    app.state.sync_mode = "push"
    app.state.poll_interval = 0.05
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
