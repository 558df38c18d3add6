import base64
import io
import os
import threading

os.environ["AI_MODE"] = "mock"
os.environ.setdefault("WORKER_SECRET", "")

import pytest
import fakeredis
import fakeredis.aioredis
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from hydrotrack.main import app
from hydrotrack.db import Base, get_db
from hydrotrack import deps
from hydrotrack import models  # noqa: F401
from hydrotrack.core.ai_client import (
    InferenceProvider,
    parse_barcode_response,
    parse_container_response,
    parse_text_response,
)
from hydrotrack.infra import redis_client
from hydrotrack.infra.user_cache import UserCache
from hydrotrack.routers import jobs as jobs_router
from hydrotrack.services.users import upsert_user_settings

# --- Test Database Setup ---
#
# One SQLite file per test. pysqlite's own transaction handling is switched
# off and every transaction starts with BEGIN IMMEDIATE, so concurrent worker
# threads queue for the write lock the way Postgres row locks make them wait.


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=60,
    )

    @event.listens_for(eng, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Direct database session for setup and assertions."""
    session = session_factory()
    yield session
    session.close()


# --- Redis ---

@pytest.fixture(autouse=True)
def mock_redis():
    server = fakeredis.FakeServer()
    # Create fake clients sharing the same server
    async_redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    sync_redis = fakeredis.FakeRedis(server=server, decode_responses=True)

    # Force the clients into the infra module
    redis_client._redis_async = async_redis
    redis_client._redis_sync = sync_redis

    yield sync_redis

    # Cleanup
    redis_client._redis_async = None
    redis_client._redis_sync = None


@pytest.fixture
def cache(mock_redis):
    return UserCache(mock_redis)


# --- Inference ---

class ScriptedProvider(InferenceProvider):
    """Replays canned provider answers; can be told to fail the first N calls."""

    name = "scripted"

    def __init__(self):
        self.container_reply = "ESTIMATE:16:reusable-bottle:water"
        self.barcode_reply = "BARCODE: 049000028911\nOUNCES: 20\nLIQUID: soda\nPRODUCT: Test Cola"
        self.text_reply = "FINAL ANSWER: 8 oz | LIQUID: water"
        self.error = None
        self.fail_times = None  # None = fail every call while error is set
        self.on_call = None  # runs inside the provider call, before it answers
        self.calls = 0
        self._lock = threading.Lock()

    def _call(self):
        with self._lock:
            self.calls += 1
            call_number = self.calls
        if self.on_call is not None:
            self.on_call()
        if self.error is not None and (self.fail_times is None or call_number <= self.fail_times):
            raise self.error

    def analyze_container(self, image, mime_type, *, hand_size="medium"):
        self._call()
        return parse_container_response(self.container_reply)

    def analyze_barcode(self, image, mime_type):
        self._call()
        return parse_barcode_response(self.barcode_reply)

    def analyze_text(self, description):
        self._call()
        return parse_text_response(self.text_reply)


@pytest.fixture
def provider():
    return ScriptedProvider()


# --- App ---

@pytest.fixture
def client(session_factory, provider):
    """Test client with DB, session factory and provider overrides."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_provider] = lambda: provider
    jobs_router.limiter.reset()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# --- Data helpers ---

@pytest.fixture
def image_b64():
    """A real JPEG, base64 encoded, big enough to pass payload validation."""
    img = Image.new("RGB", (120, 160), color=(40, 120, 200))
    buf = io.BytesIO()
    img.save(buf, format="JPEG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def onboard(session_factory, cache):
    """Create a user with settings and a seeded goal history."""
    def _onboard(user_id="user-1", timezone="UTC", daily_goal=64.0, sip_size="medium", hand_size="medium"):
        with session_factory() as db:
            upsert_user_settings(
                db,
                cache,
                user_id,
                timezone=timezone,
                daily_goal=daily_goal,
                sip_size=sip_size,
                hand_size=hand_size,
            )
        return user_id

    return _onboard
