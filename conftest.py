# conftest.py

import json
import os
import tempfile
import uuid
from types import SimpleNamespace

import pytest
import requests

# Set testing environment BEFORE importing app so the config classes pick
# up TestingConfig defaults.
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from partner_sync.models import db  # noqa: E402
from partner_sync.sync.clients import create_lms_client, create_prm_client  # noqa: E402
from partner_sync.sync.pipeline import SyncOrchestrator, SyncSettings  # noqa: E402

PRM_BASE = "https://prm.test/api/objects/v1"
LMS_BASE = "https://lms.test"


class FakeResponse:
    def __init__(self, *, status_code=200, json_data=None, text: str = ""):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text or (json.dumps(json_data) if json_data is not None else "")
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data


class FakeSession:
    """
    Stand-in for ``requests.Session`` routing by method and full URL.

    Each route holds a queue of responses; the last one is repeated once the
    queue is down to a single entry. Queue entries may be ``FakeResponse``
    objects, exceptions to raise, or callables taking the call record.
    Unknown routes answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    @staticmethod
    def response(status_code=200, json_data=None, text=""):
        return FakeResponse(status_code=status_code, json_data=json_data, text=text)

    def add(self, method, url, *responses):
        self.routes.setdefault((method.upper(), url), []).extend(responses)
        return self

    def add_json(self, method, url, payload, status_code=200):
        return self.add(method, url, FakeResponse(status_code=status_code, json_data=payload))

    def add_status(self, method, url, status_code, times=1):
        return self.add(method, url, *[FakeResponse(status_code=status_code) for _ in range(times)])

    def add_text(self, method, url, text, status_code=200):
        return self.add(method, url, FakeResponse(status_code=status_code, text=text))

    def prm_collection(self, entity, records):
        payload = {"success": True, "data": {"count": len(records), "results": list(records)}}
        return self.add_json("GET", f"{PRM_BASE}/{entity}", payload)

    def lms_collection(self, path, records, next_url=None, url=None):
        payload = {"data": list(records), "links": {"next": next_url} if next_url else {}}
        return self.add_json("GET", url or f"{LMS_BASE}{path}", payload)

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        call = SimpleNamespace(method=method.upper(), url=url, params=dict(params or {}), json=json, headers=headers)
        self.calls.append(call)
        queue = self.routes.get((call.method, url))
        if not queue:
            return FakeResponse(status_code=404, json_data={"error": "not found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(call)
        return response

    def calls_to(self, method, url):
        return [call for call in self.calls if call.method == method.upper() and call.url == url]


@pytest.fixture(scope="function")
def app():
    """Create an isolated application backed by a temporary SQLite file."""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    try:
        flask_app = create_app(
            {
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SYNC_PAGE_DELAY_SECONDS": 0.0,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": False,
            },
            flask_env="testing",
        )
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def prm_client(app, fake_session):
    return create_prm_client(app, session=fake_session, page_delay=0, sleep_fn=lambda seconds: None)


@pytest.fixture
def lms_client(app, fake_session):
    return create_lms_client(app, session=fake_session, page_delay=0, sleep_fn=lambda seconds: None)


@pytest.fixture
def sync_settings():
    return SyncSettings(max_workers=2, enrollment_abort_threshold=3)


@pytest.fixture
def orchestrator(app, prm_client, lms_client, sync_settings):
    return SyncOrchestrator.from_app(app, prm_client=prm_client, lms_client=lms_client, settings=sync_settings)


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
