"""
Pytest configuration and fixtures for GenStudio tests.
"""
import json
import threading
import time

import pytest
import requests
from fastapi.testclient import TestClient

from genstudio.config import Settings
from genstudio.database import Base, build_engine, build_session_factory
from genstudio.limiter import limiter
from genstudio.main import create_app
from genstudio.notifications import NotificationChannel
from genstudio.worker.api_client import RemoteApiClient
from genstudio.worker.coordinator import LifecycleCoordinator
from genstudio.worker.downloader import ArtifactDownloader
from genstudio.worker.inflight import InFlightRegistry
from genstudio.worker.record_store import GenerationStore

# Disable rate limiting for tests
limiter.enabled = False

API_BASE = "https://api.test/v1"
API_KEY = "sk-test"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"v" * 4096
IMAGE_BYTES = b"\x89PNG\r\n\x1a\n" + b"i" * 512


# ============================================================
# FAKE HTTP
# ============================================================

class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code=200, payload=None, body=b"", chunks=None, headers=None, delay=0.0):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.delay = delay
        self.closed = False
        if payload is not None:
            body = json.dumps(payload).encode()
        self.content = body
        self.text = body.decode("utf-8", errors="replace")
        # chunks may contain exceptions to simulate a transfer cut mid-stream
        self._chunks = chunks if chunks is not None else ([body] if body else [])

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    """Scripted HTTP session keyed by (METHOD, url).

    A route maps to a FakeResponse, a list of them (consumed in order, the
    last one repeats), a callable returning one, or an exception to raise.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, method, url, *responses):
        self.routes[(method.upper(), url)] = list(responses)

    def count(self, method, url):
        with self._lock:
            return sum(1 for m, u, _ in self.calls if m == method.upper() and u == url)

    def request(self, method, url, **kwargs):
        method = method.upper()
        with self._lock:
            self.calls.append((method, url, kwargs))
            script = self.routes.get((method, url))
            if not script:
                raise requests.exceptions.ConnectionError(f"no route for {method} {url}")
            item = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(method, url, kwargs)
        return item

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


def status_payload(status, progress=0, **extra):
    return {"id": "task-1", "status": status, "progress": progress, **extra}


# ============================================================
# CORE FIXTURES
# ============================================================

@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """File-backed SQLite so worker threads see the same data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def channel():
    return NotificationChannel()


@pytest.fixture(scope="function")
def store(session_factory, channel):
    return GenerationStore(session_factory, channel)


@pytest.fixture(scope="function")
def http():
    return FakeSession()


@pytest.fixture(scope="function")
def api_client(http):
    return RemoteApiClient(API_BASE, session=http, timeout=5)


@pytest.fixture(scope="function")
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture(scope="function")
def downloader(http, data_dir):
    downloader = ArtifactDownloader(data_dir, session=http, timeout=5, registry=InFlightRegistry("downloads"))
    downloader.ensure_directories()
    return downloader


@pytest.fixture(scope="function")
def make_coordinator(store, api_client, downloader):
    def factory(**kwargs):
        options = {"poll_interval": 0.01}
        options.update(kwargs)
        return LifecycleCoordinator(store, api_client, downloader, **options)
    return factory


@pytest.fixture(scope="function")
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture(scope="function")
def settings(tmp_path, data_dir):
    return Settings(
        api_key=None,
        api_base_url=API_BASE,
        data_dir=str(data_dir),
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        poll_interval_seconds=0.01,
    )


@pytest.fixture(scope="function")
def client(settings, coordinator, channel):
    """Create a test client."""
    app = create_app(settings=settings, coordinator=coordinator, channel=channel)
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def auth_headers():
    return {"X-API-Key": API_KEY}


@pytest.fixture(scope="function")
def video_record(store):
    """A submitted video job still in flight."""
    def factory(task_id="task-1", prompt="a red fox running through snow", **patch):
        generation_id = store.create({"type": "video", "prompt": prompt, "model": "veo3.1"})
        store.update_by_id(generation_id, task_id=task_id, **patch)
        return generation_id
    return factory
