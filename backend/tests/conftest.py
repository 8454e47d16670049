import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# Settings are read once at import time
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["APP_ENV"] = "test"
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="telecare-logs-"))

import pytest
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from telecare.config import get_settings
from telecare.constants import Role
from telecare.errors import ChannelError
from telecare.main import app
from telecare.models import DOCUMENT_MODELS
from telecare.services import credential_store
from telecare.services.notification_service import NotificationDispatcher, set_dispatcher
from telecare.utils import clock
from telecare.utils.email import set_email_gateway

API = "/api/v1"
PASSWORD = "Abcdef1!"

_TOKEN_RE = re.compile(r"token=([A-Za-z0-9_\-.]+)")


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Outbox:
    """Email gateway double that keeps every message."""

    def __init__(self):
        self.messages = []
        self.fail = False

    async def init(self) -> bool:
        return True

    async def send(self, to, subject, html, text=None):
        if self.fail:
            raise ChannelError("SMTP unavailable")
        self.messages.append({"to": to, "subject": subject, "html": html, "text": text})

    async def close(self):
        pass

    def to(self, address, subject=None):
        return [
            m for m in self.messages
            if m["to"] == address and (subject is None or m["subject"] == subject)
        ]

    def token_for(self, address, subject):
        matches = self.to(address, subject)
        assert matches, f"no '{subject}' email for {address}"
        return _TOKEN_RE.search(matches[-1]["text"]).group(1)


class RecordingSender:
    def __init__(self, channel, fail=False):
        self.channel = channel
        self.fail = fail
        self.calls = []

    async def send(self, user, notification):
        self.calls.append((str(user.id), notification.title))
        if self.fail:
            raise ChannelError(f"{self.channel} provider unavailable")


@dataclass
class Session:
    id: str
    email: str
    access_token: str
    refresh_token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


class Api:
    """Thin helpers over the HTTP API used by most tests."""

    def __init__(self, client: AsyncClient, outbox: Outbox):
        self.client = client
        self.outbox = outbox

    async def register(self, email, password=PASSWORD, role="patient", **fields):
        body = {"firstName": "Test", "lastName": "User", "email": email, "password": password, "role": role}
        body.update(fields)
        return await self.client.post(f"{API}/users/register", json=body)

    async def verify(self, email):
        token = self.outbox.token_for(email, "Verify your email address")
        return await self.client.post(f"{API}/users/verify-email", json={"token": token})

    async def login(self, email, password=PASSWORD):
        resp = await self.client.post(f"{API}/users/login", json={"email": email, "password": password})
        # The access cookie wins over the Authorization header; tests pick the identity explicitly
        self.client.cookies.clear()
        return resp

    async def session(self, email, password=PASSWORD) -> Session:
        resp = await self.login(email, password)
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        return Session(data["user"]["id"], email, data["accessToken"], data["refreshToken"])

    async def signup(self, email, password=PASSWORD, role="patient", **fields) -> Session:
        """Register, verify and log in."""
        resp = await self.register(email, password, role, **fields)
        assert resp.status_code == 201, resp.text
        resp = await self.verify(email)
        assert resp.status_code == 200, resp.text
        return await self.session(email, password)

    async def admin(self, email="admin@x.io") -> Session:
        await credential_store.create_user(
            first_name="Site",
            last_name="Admin",
            email=email,
            password=PASSWORD,
            role=Role.ADMIN,
            email_verified=True,
        )
        return await self.session(email)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    fake = FakeClock(datetime.now(timezone.utc).replace(microsecond=0))
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["telecare_test"]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    yield database


@pytest.fixture(autouse=True)
def outbox():
    box = Outbox()
    set_email_gateway(box)
    yield box
    set_email_gateway(None)


@pytest.fixture
def senders():
    return {
        "email": RecordingSender("email"),
        "sms": RecordingSender("sms"),
        "push": RecordingSender("push"),
    }


@pytest.fixture
def dispatcher(senders):
    instance = NotificationDispatcher(senders=senders)
    set_dispatcher(instance)
    yield instance
    set_dispatcher(None)


@pytest.fixture
async def client(db, dispatcher):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def api(client, outbox):
    return Api(client, outbox)
