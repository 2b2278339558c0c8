# backend/tests/conftest.py
import os

os.environ.setdefault("BROKER_ENABLED", "false")
os.environ.pop("OPENAI_API_KEY", None)

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from photo_analysis import system_config
from photo_analysis.analysis_client import AnalysisResult, UpstreamErrorKind
from photo_analysis.coordinator import QueueCoordinator
from photo_analysis.db import init_db
from photo_analysis.models import Environment, Item, Photo, Report, User
from photo_analysis.notifications import NotificationSink


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    def notify_progress(self, report_id, processed_images, total_images, percentage):
        self.events.append(("progress", {"reportId": report_id, "processedImages": processed_images,
                                         "totalImages": total_images, "percentage": percentage}))

    def notify_status_change(self, report_id, status):
        self.events.append(("statusChange", {"reportId": report_id, "status": status}))

    def of(self, event):
        return [data for name, data in self.events if name == event]


class StubClient:
    """Stands in for AnalysisClient; replies are consumed in call order."""

    def __init__(self, replies=None, configured=True, connection_ok=True):
        self.replies = list(replies or [])
        self.configured = configured
        self.connection_ok = connection_ok
        self.calls = []

    def is_configured(self):
        return self.configured

    def load_config(self):
        pass

    def test_connection(self):
        if self.connection_ok:
            return {"success": True, "message": "Connection established"}
        return {"success": False, "message": "API key invalid or expired"}

    def analyze_image(self, image_url, prompt):
        self.calls.append((image_url, prompt))
        if self.replies:
            return self.replies.pop(0)
        return AnalysisResult(True, content="looks fine")


def ok(content):
    return AnalysisResult(True, content=content)


def failure(type_, status, retryable=False, critical=False, message="boom"):
    return AnalysisResult(False, error=UpstreamErrorKind(type_, status, message, retryable, critical))


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    system_config.ensure_defaults(engine)
    return engine


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def client():
    return StubClient()


@pytest.fixture
def coordinator(engine, client, sink):
    return QueueCoordinator(engine, client, broker=None, notifier=sink, poll_interval=3600)


@pytest.fixture
def make_report(session):
    """Create an owner, a report and `photos` unanalyzed photos labelled kitchen/door."""
    def _make(photos=3, owner=None, labels=("Cozinha", "Porta"), address="Rua A, 1"):
        if owner is None:
            owner = User(name="Ana", email="ana@example.com")
            session.add(owner)
            session.commit()
        report = Report(owner_id=owner.id, address=address)
        session.add(report)
        session.commit()
        for i in range(photos):
            session.add(Photo(report_id=report.id, storage_key=f"{report.id}/{i}.jpg", ordering=i,
                              environment_label=labels[0], item_label=labels[1]))
        session.commit()
        return report
    return _make


@pytest.fixture
def taxonomy(session):
    """Kitchen with a plain 'Pia' item and a 'Porta' item that has two children."""
    kitchen = Environment(name="Cozinha")
    session.add(kitchen)
    session.commit()
    door = Item(environment_id=kitchen.id, name="Porta", prompt="Which door is this?")
    sink_item = Item(environment_id=kitchen.id, name="Pia", prompt="Describe the sink.")
    session.add(door)
    session.add(sink_item)
    session.commit()
    wood = Item(environment_id=kitchen.id, parent_id=door.id, name="Porta de Madeira",
                prompt="Describe the wooden door.", ordering=0)
    glass = Item(environment_id=kitchen.id, parent_id=door.id, name="Porta de Vidro",
                 prompt="Describe the glass door.", ordering=1)
    session.add(wood)
    session.add(glass)
    session.commit()
    return {"kitchen": kitchen, "door": door, "sink": sink_item, "wood": wood, "glass": glass}
