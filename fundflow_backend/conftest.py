import os
import tempfile

import pytest

# Point the app at a throwaway database and fake gateway settings before it is imported
_db_dir = tempfile.mkdtemp(prefix="fundflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "testing"

from fundflow_backend.app import app  # noqa: E402
from fundflow_backend.auth import create_admin  # noqa: E402
from fundflow_backend.config import MpesaConfig  # noqa: E402
from fundflow_backend.models import Project, db  # noqa: E402
from fundflow_backend.mpesa import MpesaClient  # noqa: E402

TEST_MPESA_CONFIG = MpesaConfig(
    consumer_key="test-key",
    consumer_secret="test-secret",
    passkey="test-passkey",
    shortcode="174379",
    app_url="https://fundflow.example",
    base_url="https://gateway.example",
)

ACCEPTED_PUSH = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}

ADMIN_EMAIL = "admin@fundflow.example"
ADMIN_PASSWORD = "correct horse battery staple"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeSession:
    """Stands in for ``requests.Session``; set a response to an exception to raise it."""

    def __init__(self):
        self.token_response = FakeResponse(200, {"access_token": "test-access-token", "expires_in": "3599"})
        self.push_response = FakeResponse(200, dict(ACCEPTED_PUSH))
        self.calls = []

    def _reply(self, response):
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, headers, None))
        return self._reply(self.token_response)

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(("POST", url, headers, json))
        return self._reply(self.push_response)


@pytest.fixture(autouse=True)
def reset_db():
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield
    with app.app_context():
        db.session.remove()


@pytest.fixture
def gateway(monkeypatch):
    session = FakeSession()
    monkeypatch.setitem(app.extensions, "mpesa", MpesaClient(TEST_MPESA_CONFIG, session=session))
    return session


@pytest.fixture
def make_project():
    def _make(title="Build a Well in Kajiado", goal_amount=500000, current_amount=0):
        with app.app_context():
            project = Project(title=title, description="Clean water for the community",
                              goal_amount=goal_amount, current_amount=current_amount)
            db.session.add(project)
            db.session.commit()
            return project.id
    return _make


@pytest.fixture
def admin_user():
    with app.app_context():
        create_admin(ADMIN_EMAIL, ADMIN_PASSWORD)
    return ADMIN_EMAIL, ADMIN_PASSWORD
