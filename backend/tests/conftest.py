"""Shared test fixtures for PrintBridge backend tests."""

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator

import pytest

# IMPORTANT: Set environment variables BEFORE any app imports
# This must happen before settings/config are loaded
os.environ["LOG_TO_FILE"] = "false"
os.environ["DEBUG"] = "false"

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from starlette.websockets import WebSocketState  # noqa: E402

# Ensure settings use our env vars - import and override before database import
from backend.app.core.config import settings  # noqa: E402

settings.log_to_file = False

from backend.app.core.database import Base  # noqa: E402

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Create a test database engine."""
    # One shared connection so every session sees the same in-memory database
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    # Import all models to register them
    from backend.app.models import print_job, printer, user  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def services(session_maker):
    """Dispatch core wired to the test database, with short timers."""
    from backend.app.services.container import build_services

    return build_services(session_maker, auth_timeout=0.5, receipt_grace=0.2)


@pytest.fixture
async def async_client(session_maker, services) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    from backend.app.core.database import get_db
    from backend.app.main import app

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    original_services = app.state.services
    app.state.services = services

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await services.dispatch.wait_for_pushes()
    app.state.services = original_services
    app.dependency_overrides.clear()


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def user_factory(db_session):
    """Factory to create users. Returns (user, api_key)."""
    _counter = [0]  # Use list to allow mutation in nested function

    async def _create_user(**kwargs):
        from backend.app.core.auth import generate_api_key
        from backend.app.models.user import User

        _counter[0] += 1
        full_key, key_hash, key_prefix = generate_api_key()
        defaults = {
            "username": f"user{_counter[0]}",
            "name": f"Test User {_counter[0]}",
            "email": f"user{_counter[0]}@example.com",
            "is_admin": False,
            "is_active": True,
            "api_key_hash": key_hash,
            "api_key_prefix": key_prefix,
        }
        defaults.update(kwargs)

        user = User(**defaults)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user, full_key

    return _create_user


@pytest.fixture
def printer_factory(db_session):
    """Factory to create test printers."""
    _counter = [0]

    async def _create_printer(**kwargs):
        from backend.app.models.printer import Printer

        _counter[0] += 1
        counter = _counter[0]

        defaults = {
            "name": f"Test Printer {counter}",
            "unique_id": f"printer-{counter:04d}",
            "model": "LaserJet",
            "location": "Front desk",
            "status": "online",
            "is_active": True,
        }
        defaults.update(kwargs)

        printer = Printer(**defaults)
        db_session.add(printer)
        await db_session.commit()
        await db_session.refresh(printer)
        return printer

    return _create_printer


@pytest.fixture
def job_factory(db_session):
    """Factory to create print jobs directly in a given status."""

    async def _create_job(user_id: int, printer_id: int, **kwargs):
        from backend.app.models.print_job import PrintJob

        defaults = {
            "user_id": user_id,
            "printer_id": printer_id,
            "document_name": "invoice.pdf",
            "document_url": "https://files.example.com/invoice.pdf",
            "source_type": "url",
            "render_payload": json.dumps({"printer": "Test Printer", "data": [], "config": {}}),
            "status": "ready",
        }
        defaults.update(kwargs)

        job = PrintJob(**defaults)
        db_session.add(job)
        await db_session.commit()
        await db_session.refresh(job)
        return job

    return _create_job


def api_headers(api_key: str) -> dict[str, str]:
    return {"X-API-Key": api_key}


# ============================================================================
# WebSocket doubles
# ============================================================================


class FakeWebSocket:
    """Stand-in for a Starlette WebSocket driven from the test."""

    _DISCONNECT = object()

    def __init__(self):
        self.client = ("testclient", 50000)
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data):
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("WebSocket is not connected")
        self.sent.append(data)

    async def receive(self) -> dict:
        if self.client_state == WebSocketState.DISCONNECTED:
            raise RuntimeError('Cannot call "receive" once a disconnect message has been received.')
        item = await self._inbound.get()
        if item is self._DISCONNECT:
            self.client_state = WebSocketState.DISCONNECTED
            return {"type": "websocket.disconnect", "code": self.close_code or 1000}
        return item

    async def close(self, code: int = 1000, reason: str | None = None):
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.close_reason = reason
        self._inbound.put_nowait(self._DISCONNECT)

    # Test-side helpers

    def push(self, event: dict):
        self.push_raw(json.dumps(event))

    def push_raw(self, text: str):
        self._inbound.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes):
        self._inbound.put_nowait({"type": "websocket.receive", "bytes": data})

    def drop(self):
        """Simulate the peer going away."""
        self.client_state = WebSocketState.DISCONNECTED
        self._inbound.put_nowait(self._DISCONNECT)

    def events(self, event_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == event_type]

    @property
    def is_closed(self) -> bool:
        return self.application_state == WebSocketState.DISCONNECTED


@pytest.fixture
def fake_websocket():
    return FakeWebSocket


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
async def connect_agent(services, wait_until):
    """Open a channel session for ``api_key`` and wait for the auth reply.

    Returns (websocket, serve_task). Sessions still open at teardown are dropped.
    """
    opened = []

    async def _connect(api_key: str):
        ws = FakeWebSocket()
        task = asyncio.create_task(services.channel.serve(ws))
        opened.append((ws, task))
        ws.push({"type": "authenticate", "api_key": api_key})
        await wait_until(lambda: ws.events("authenticated") or ws.is_closed)
        return ws, task

    yield _connect

    for ws, task in opened:
        if not task.done():
            ws.drop()
    await asyncio.gather(*(task for _, task in opened), return_exceptions=True)


# ============================================================================
# Log Capture Fixtures for Error Detection
# ============================================================================


class LogCapture(logging.Handler):
    """Handler that captures log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord):
        self.records.append(record)

    def clear(self):
        self.records.clear()

    def get_errors(self) -> list[logging.LogRecord]:
        """Get all ERROR and CRITICAL level records."""
        return [r for r in self.records if r.levelno >= logging.ERROR]

    def get_warnings(self) -> list[logging.LogRecord]:
        """Get all WARNING level records."""
        return [r for r in self.records if r.levelno == logging.WARNING]

    def has_errors(self) -> bool:
        """Check if any errors were logged."""
        return len(self.get_errors()) > 0

    def format_errors(self) -> str:
        """Format all errors as a string for assertion messages."""
        errors = self.get_errors()
        if not errors:
            return "No errors"
        formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")
        return "\n".join(formatter.format(r) for r in errors)


@pytest.fixture
def capture_logs():
    """Fixture that captures log output during a test.

    Usage:
        def test_something(capture_logs):
            some_function()
            assert not capture_logs.has_errors(), capture_logs.format_errors()
    """
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)

    # Attach to root logger to capture all logs
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    previous_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)

    yield handler

    root_logger.setLevel(previous_level)
    root_logger.removeHandler(handler)
