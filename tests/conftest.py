"""Pytest configuration and fixtures."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from karaoke.api.routes import sessions as song_routes
from karaoke.core.session_machine import build_session_machine
from karaoke.core.song_machine import build_song_machine
from karaoke.db import database
from karaoke.db.database import Base, get_db
from karaoke.db.models import KaraokeSession, SongRequest
from karaoke.main import app
from karaoke.services.repository import SqlQueueRepository
from karaoke.services.state_manager import (
    StateManager,
    reset_state_manager,
    set_state_manager,
)

T0 = datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@pytest.fixture
def anyio_backend():
    return "asyncio"


# -----------------------------------------------------------------------------
# Time doubles
# -----------------------------------------------------------------------------

class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class ManualTimer:
    when: datetime
    delay: float
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualScheduler:
    """Scheduler double: timers fire only from ``advance``, in due order."""

    clock: ManualClock
    timers: list[ManualTimer] = field(default_factory=list)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.clock.now + timedelta(seconds=delay), delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not (t.cancelled or t.fired)]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every timer that comes due."""
        target = self.clock.now + timedelta(seconds=seconds)
        for timer in sorted(self.pending, key=lambda t: t.when):
            if timer.when > target:
                break
            self.clock.now = max(self.clock.now, timer.when)
            timer.fired = True
            timer.callback()
        self.clock.now = target


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """In-memory database shared by every session the test opens."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = factory
    try:
        yield factory
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A session for direct service calls; also injected into routes."""
    async with session_factory() as session:
        async def override_get_db():
            yield session
        app.dependency_overrides[get_db] = override_get_db
        yield session
        app.dependency_overrides.clear()


@pytest.fixture
def repository(session_factory) -> SqlQueueRepository:
    return SqlQueueRepository(session_factory)


@dataclass
class Seeder:
    """Insert rows directly, bypassing the services."""

    factory: async_sessionmaker[AsyncSession]

    async def session(
        self,
        session_id: str = "ABC123",
        status: str = "active",
        song_duration: int = 270,
        created_at: datetime = T0,
    ) -> str:
        async with self.factory() as db:
            db.add(KaraokeSession(
                id=session_id,
                status=status,
                song_duration=song_duration,
                created_at=created_at,
            ))
            await db.commit()
        return session_id

    async def song(
        self,
        song_id: str,
        position: int,
        session_id: str = "ABC123",
        status: str = "waiting",
        singer_name: Optional[str] = None,
        artist: str = "Queen",
        title: str = "Bohemian Rhapsody",
        delayed_until: Optional[datetime] = None,
        delay_minutes: Optional[int] = None,
    ) -> str:
        async with self.factory() as db:
            db.add(SongRequest(
                id=song_id,
                session_id=session_id,
                singer_name=singer_name or f"Singer {song_id}",
                artist=artist,
                song_title=title,
                position=position,
                status=status,
                requested_at=T0,
                delayed_until=delayed_until,
                delay_minutes=delay_minutes,
            ))
            await db.commit()
        return song_id

    async def queue(self, session_id: str = "ABC123", *song_ids: str) -> list[str]:
        """A session with songs at positions 1..n, all waiting."""
        await self.session(session_id)
        for position, song_id in enumerate(song_ids, start=1):
            await self.song(song_id, position, session_id=session_id)
        return list(song_ids)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


# -----------------------------------------------------------------------------
# Lifecycle engine
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_state_manager():
    """Reset the process-wide StateManager and rate-limit counters between tests."""
    yield
    reset_state_manager()
    song_routes.limiter.reset()


def make_manager(repository, scheduler, clock, **kwargs) -> StateManager:
    return StateManager(
        repository,
        song_machine=build_song_machine(min_delay_minutes=1, max_delay_minutes=30),
        session_machine=build_session_machine(grace_seconds=5.0),
        scheduler=scheduler,
        clock=clock,
        **kwargs,
    )


@pytest_asyncio.fixture
async def manager(repository, scheduler, clock):
    """StateManager on the test database with manual time, installed as the singleton."""
    mgr = make_manager(repository, scheduler, clock, enforce_single_playing=False)
    set_state_manager(mgr)
    yield mgr
    await mgr.shutdown()


@pytest_asyncio.fixture
async def client(db_session, manager):
    """Async test client over the app (lifespan not run; fixtures provide DB and manager)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_state_manager(scheduler, clock):
    """Build extra StateManagers (e.g. over a failing repository) on the test clock."""
    def _make(repo, **kwargs) -> StateManager:
        return make_manager(repo, scheduler, clock, **kwargs)
    return _make
