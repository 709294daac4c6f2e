"""
Shared fixtures: in-memory database, fake redis, recording collaborators
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_ENABLED", "true")

import fakeredis
import pytest
from faker import Faker
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from telemetry_ingest.models.database import Base
from telemetry_ingest.services.collaborators import NodeLimitPolicy
from telemetry_ingest.services.ingestion import IngestionCoordinator, InputMethods
from telemetry_ingest.services.registry import InputRegistry
from telemetry_ingest.services.timeresolve import TimeResolver

NOW = 1700000000
USERID = 7

fake = Faker()

# Test database setup
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine)


class RecordingDevice:
    """Device provisioner that remembers every call"""
    
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created = []
        self.fields = []
        self.devices = {}
    
    def create(self, userid, nodeid, name=None, description=None, ip=None):
        if self.fail:
            raise RuntimeError("device store offline")
        self.created.append((userid, nodeid))
        self.devices[(userid, nodeid)] = len(self.devices) + 1
        return self.devices[(userid, nodeid)]
    
    def exists_nodeid(self, userid, nodeid):
        if self.fail:
            raise RuntimeError("device store offline")
        return self.devices.get((userid, nodeid), False)
    
    def set_fields(self, deviceid, fields):
        self.fields.append((deviceid, fields))
        return True


class RecordingProcessEngine:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []
    
    def forward(self, time, value, processlist, opt):
        if self.fail:
            raise RuntimeError("process queue unavailable")
        self.calls.append((time, value, processlist, opt))


class RecordingPublisher:
    def __init__(self):
        self.messages = []
    
    def publish(self, topic, time, value):
        self.messages.append((topic, time, value))


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    
    yield session
    
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def cache():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def resolver():
    return TimeResolver(clock=lambda: NOW)


@pytest.fixture
def registry(db_session, cache):
    return InputRegistry(db_session, cache, access_policy=NodeLimitPolicy(32))


@pytest.fixture
def device():
    return RecordingDevice()


@pytest.fixture
def process_engine():
    return RecordingProcessEngine()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def coordinator(registry, device, process_engine, publisher):
    return IngestionCoordinator(
        registry,
        device=device,
        process=process_engine,
        publisher=publisher,
        client_ip="192.0.2.10",
    )


@pytest.fixture
def methods(coordinator, resolver):
    return InputMethods(coordinator, resolver=resolver)
