import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from callpair.bot import create_app
from callpair.broadcast import Broadcaster
from callpair.config import Settings
from callpair.db import create_engine, create_session_factory, init_db
from callpair.dialer import DialerError
from callpair.rate_limit import RateLimiter
from callpair.state_machine import ConversationMachine
from callpair.store import SessionStore

CALLER = "+15125551234"
CALLBACK_NUMBER = "+14155551234"

# A Friday, so the next business day is Monday, October 19.
FRIDAY_NOON = datetime(2026, 10, 16, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = FRIDAY_NOON):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CodeSequence:
    """Code generator that hands out the given codes, repeating the last one."""

    def __init__(self, *codes: str):
        self.codes = list(codes)
        self.draws = 0

    def __call__(self) -> str:
        self.draws += 1
        if len(self.codes) > 1:
            return self.codes.pop(0)
        return self.codes[0]


class FakeDialer:
    def __init__(self, call_leg_id: str = "CA-callback", error: Exception | None = None):
        self.call_leg_id = call_leg_id
        self.error = error
        self.calls = []

    async def place_call(self, to_number: str, session_id: str, caller_name: str) -> str:
        self.calls.append((to_number, session_id, caller_name))
        if self.error is not None:
            raise self.error
        return self.call_leg_id

    async def close(self):
        pass


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def notify(self, session_id: str, event_type: str, payload: dict) -> int:
        self.sent.append((session_id, event_type, payload))
        return 1

    def types(self, session_id: str | None = None) -> list[str]:
        return [t for sid, t, _ in self.sent if session_id is None or sid == session_id]


async def drain(machine: ConversationMachine):
    """Wait for the machine's deferred callbacks to finish."""
    await asyncio.wait_for(asyncio.gather(*list(machine._tasks)), timeout=2)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'callpair.db'}"


@pytest_asyncio.fixture
async def db(database_url):
    engine = create_engine(database_url)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def codes():
    return CodeSequence("4827", "1111", "2222", "3333")


@pytest.fixture
def store(db, clock, codes):
    return SessionStore(db, clock=clock, code_generator=codes)


@pytest.fixture
def rate_limiter(db, clock):
    return RateLimiter(db, max_attempts=3, lockout_seconds=60, clock=clock)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def dialer():
    return FakeDialer()


@pytest.fixture
def failing_dialer():
    return FakeDialer(error=DialerError("twilio unavailable"))


@pytest.fixture
def machine(store, rate_limiter, broadcaster, dialer, clock):
    return ConversationMachine(
        store, rate_limiter, broadcaster, dialer, clock=clock, callback_delay=0,
    )


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        base_url="https://demo.example.com",
        twilio_phone_number="+15125550000",
        twilio_auth_token="twilio-secret",
        callback_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def app(settings, dialer, clock):
    app = create_app(settings, dialer=dialer, clock=clock)
    await init_db(app.state.engine)
    yield app
    await app.state.machine.shutdown()
    await app.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://demo.example.com") as client:
        yield client
