from datetime import datetime

import pytest

from app import create_app
from config import Config
from models import db
from models.resource import Resource
from models.user import User, Role
from security.password import hash_password
from services.availability import AvailabilityResolver
from services.lifecycle import BookingLifecycle
from services.notifications import NotificationDispatcher
from utils.seed import seed_roles

# Monday
NOW = datetime(2030, 1, 7, 8, 0)
PASSWORD = "correct-horse-battery"


def at(hour, minute=0, day=8):
    """Timestamp on January <day> 2030 (the 8th is a Tuesday)."""
    return datetime(2030, 1, day, hour, minute)


class PytestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    CSRF_ENABLED = False
    BCRYPT_ROUNDS = 4
    SMTP_HOST = None
    WIDGET_JWT_SECRET = "widget-test-secret"
    PUBLIC_API_URL = "https://api.example.test"
    LOG_LEVEL = "WARNING"


class RecordingTransport:
    """Mail transport double: records what it was asked to send."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def __call__(self, to_email, subject, body):
        if self.error:
            return False, self.error
        self.sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    def to(self, email):
        return [m for m in self.sent if m["to"] == email]


@pytest.fixture
def config_class(tmp_path):
    class _Config(PytestConfig):
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + str(tmp_path / "test.db")

    return _Config


@pytest.fixture
def app(config_class):
    app = create_app(config_class)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def outbox():
    return RecordingTransport()


@pytest.fixture
def mail(monkeypatch, outbox):
    """Route the HTTP layer's SMTP sender into the recording transport."""
    monkeypatch.setattr("utils.emailer.send_email", outbox)
    return outbox


@pytest.fixture
def resolver(app):
    return AvailabilityResolver(db.session, clock=lambda: NOW)


@pytest.fixture
def lifecycle(app, outbox):
    return BookingLifecycle(db.session, NotificationDispatcher(db.session, outbox), clock=lambda: NOW)


@pytest.fixture
def make_user(app):
    def _make(email, role="CLIENT", password=PASSWORD, **fields):
        user = User(email=email, password_hash=hash_password(password, rounds=4), **fields)
        user.roles.append(Role.query.filter_by(name=role).one())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def provider(make_user):
    return make_user("provider@example.com", role="PROVIDER", business_name="Happy Paws")


@pytest.fixture
def customer(make_user):
    return make_user("client@example.com", role="CLIENT", full_name="Casey Client")


@pytest.fixture
def stranger(make_user):
    return make_user("stranger@example.com", role="CLIENT")


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", role="ADMIN")


@pytest.fixture
def make_resource(app):
    def _make(owner, **fields):
        fields.setdefault("title", "Dog grooming")
        fields.setdefault("price_amount", 4500)
        resource = Resource(provider_id=owner.id, **fields)
        db.session.add(resource)
        db.session.commit()
        return resource
    return _make


@pytest.fixture
def resource(make_resource, provider):
    return make_resource(provider)


@pytest.fixture
def login(app):
    """Returns a test client logged in as the given user."""
    def _login(user, password=PASSWORD):
        http = app.test_client()
        resp = http.post("/auth/login", json={"email": user.email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return http
    return _login
