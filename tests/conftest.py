# tests/conftest.py
import os
import sys
import asyncio
import json
from urllib.parse import urlencode

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.append(os.path.abspath("."))

# Must be set before the app (and its cached settings) is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_TIMES", "1000")
os.environ.setdefault("TRIGGER_DEDUP_SECONDS", "0")
os.environ.setdefault("REDIS_URL", "redis://localhost:1")

from fastapi_limiter import FastAPILimiter

from safepath.core import get_settings
from safepath.database import Base, get_db
from safepath.location import LocationService, get_location_service
from safepath.notifications import ChannelResult, Notifier, PushResult, get_notifier
from safepath.realtime import ConnectionManager, get_event_bus
from main import app


# DB (SQLite in-memory for tests)
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def prepare_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# One event loop for the WHOLE pytest session
@pytest.fixture(scope="session")
def session_loop():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    loop.close()


# Run FastAPI startup/shutdown once per session (same loop)
# This ensures FastAPILimiter.init() is called correctly.
@pytest.fixture(scope="session", autouse=True)
def app_lifespan(session_loop):
    session_loop.run_until_complete(app.router.startup())
    yield
    session_loop.run_until_complete(app.router.shutdown())

    r = getattr(FastAPILimiter, "redis", None)
    if r is not None:
        session_loop.run_until_complete(r.aclose())


@pytest.fixture(scope="session", autouse=True)
def adjust_settings_env():
    settings = get_settings()
    settings.CLOUDINARY_URL = None
    return settings


# In-memory providers


class FakeSms:
    def __init__(self):
        self.sent = []
        self.failing = set()
        self.raising = set()

    async def send(self, to, body):
        if to in self.raising:
            raise RuntimeError(f"provider crashed for {to}")
        self.sent.append((to, body))
        if to in self.failing:
            return ChannelResult("SMS", False, error="Invalid number")
        return ChannelResult("SMS", True, message_id=f"SM{len(self.sent)}")


class FakeEmail:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return ChannelResult("Email", True)


class FakePush:
    def __init__(self):
        self.calls = []

    async def send_multicast(self, tokens, title, body, data=None):
        self.calls.append((tokens, title, body, data))
        if not tokens:
            return PushResult(False, error="No device tokens registered")
        return PushResult(True, success_count=len(tokens))


class RecordingBus(ConnectionManager):
    def __init__(self):
        super().__init__()
        self.events = []

    async def emit(self, event, data, room=None, exclude=None):
        self.events.append((event, data, room))
        return await super().emit(event, data, room=room, exclude=exclude)


@pytest.fixture()
def notifier():
    return Notifier(sms=FakeSms(), email=FakeEmail(), push=FakePush())


@pytest.fixture()
def bus():
    return RecordingBus()


# Simple ASGI response/client
class SimpleResponse:
    def __init__(
        self, status_code: int, body: bytes, headers: list[tuple[bytes, bytes]]
    ):
        self.status_code = status_code
        self._body = body
        self.headers = {k.decode(): v.decode() for k, v in headers}

    def json(self):
        return json.loads(self._body.decode())


class SimpleClient:
    """
    Important:
    - uses ONE shared session loop (passed from fixture)
    - does NOT call asyncio.run()
    - does NOT close the loop
    """

    def __init__(self, app, loop):
        self.app = app
        self.loop = loop

    def close(self):
        # do not close the loop here (session fixture closes it)
        pass

    def request(
        self,
        method: str,
        path: str,
        json_body=None,
        data=None,
        headers=None,
        files=None,
    ):
        headers = headers or {}
        body_bytes = b""
        path, _, query = path.partition("?")

        if files:
            boundary = "TESTBOUNDARY"
            parts: list[bytes] = []
            for name, value in (data or {}).items():
                parts.append(
                    f"--{boundary}\r\n"
                    f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                    f"{value}\r\n".encode()
                )
            for name, (filename, content, content_type) in files.items():
                disposition = f'form-data; name="{name}"; filename="{filename}"'
                part_headers = (
                    f"--{boundary}\r\n"
                    f"Content-Disposition: {disposition}\r\n"
                    f"Content-Type: {content_type or 'application/octet-stream'}\r\n\r\n"
                )
                parts.append(part_headers.encode() + content + b"\r\n")
            parts.append(f"--{boundary}--\r\n".encode())
            body_bytes = b"".join(parts)
            headers["content-type"] = f"multipart/form-data; boundary={boundary}"

        elif json_body is not None:
            body_bytes = json.dumps(json_body).encode()
            headers.setdefault("content-type", "application/json")

        elif data is not None:
            if isinstance(data, dict):
                body_bytes = urlencode(data, doseq=True).encode()
            elif isinstance(data, bytes):
                body_bytes = data
            else:
                body_bytes = str(data).encode()
            headers.setdefault("content-type", "application/x-www-form-urlencoded")

        raw_headers = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
        scope = {
            "type": "http",
            "method": method.upper(),
            "path": path,
            "headers": raw_headers,
            "query_string": query.encode(),
            "client": ("testclient", 5000),
        }

        async def receive():
            nonlocal body_bytes
            chunk, body_bytes = body_bytes, b""
            return {"type": "http.request", "body": chunk, "more_body": False}

        response_body = bytearray()
        response_status = 500
        response_headers: list[tuple[bytes, bytes]] = []

        async def send(message):
            nonlocal response_status, response_headers
            if message["type"] == "http.response.start":
                response_status = message["status"]
                response_headers = message.get("headers", [])
            elif message["type"] == "http.response.body":
                response_body.extend(message.get("body", b""))

        # ensure the loop is the current one
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.app(scope, receive, send))
        return SimpleResponse(response_status, bytes(response_body), response_headers)

    def get(self, path: str, headers=None):
        return self.request("GET", path, headers=headers)

    def post(self, path: str, json=None, data=None, headers=None, files=None):
        return self.request(
            "POST", path, json_body=json, data=data, headers=headers, files=files
        )

    def put(self, path: str, json=None, data=None, headers=None, files=None):
        return self.request(
            "PUT", path, json_body=json, data=data, headers=headers, files=files
        )

    def delete(self, path: str, headers=None):
        return self.request("DELETE", path, headers=headers)


# Client fixture: override DB and provider dependencies per test
@pytest.fixture()
def client(db_session, session_loop, notifier, bus):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_location_service] = lambda: LocationService(None)

    c = SimpleClient(app, loop=session_loop)
    try:
        yield c
    finally:
        app.dependency_overrides.clear()
        c.close()

