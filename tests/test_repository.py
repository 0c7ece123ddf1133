"""Tests for the SQLAlchemy queue repository."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from karaoke.core.errors import NotFoundError, PersistenceError
from karaoke.core.queue_order import PositionUpdate
from karaoke.core.records import TipHandles
from karaoke.services.repository import SqlQueueRepository, as_utc

T0 = datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


def _broken_factory():
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_song(self, repository, seed) -> None:
        await seed.queue("ABC123", "a")
        song = await repository.load_song("a")
        assert song.song_id == "a"
        assert song.session_id == "ABC123"
        assert song.status == "waiting"
        assert song.title == "Bohemian Rhapsody"
        assert song.requested_at == T0

    @pytest.mark.asyncio
    async def test_missing_records_load_as_none(self, repository, seed) -> None:
        assert await repository.load_song("nope") is None
        assert await repository.load_session("NOPE") is None

    @pytest.mark.asyncio
    async def test_load_session(self, repository, seed) -> None:
        await seed.session("ABC123", status="paused", song_duration=200)
        session = await repository.load_session("ABC123")
        assert session.status == "paused"
        assert session.song_duration_seconds == 200
        assert session.created_at == T0
        assert session.tip_handles == TipHandles()

    @pytest.mark.asyncio
    async def test_siblings_ordered_by_position(self, repository, seed) -> None:
        await seed.session("ABC123")
        await seed.song("c", 3)
        await seed.song("a", 1)
        await seed.song("b", 2)
        await seed.session("OTHER1")
        await seed.song("x", 1, session_id="OTHER1")
        songs = await repository.load_sibling_songs("ABC123")
        assert [s.song_id for s in songs] == ["a", "b", "c"]


class TestPersist:
    @pytest.mark.asyncio
    async def test_persist_song_status_with_delay(self, repository, seed) -> None:
        await seed.queue("ABC123", "a")
        until = T0 + timedelta(minutes=5)
        await repository.persist_song_status(
            "a", "delayed", {"delayed_until": until, "delay_minutes": 5, "song_id": "ignored"}
        )
        song = await repository.load_song("a")
        assert song.status == "delayed"
        assert song.delayed_until == until
        assert song.delay_minutes == 5

    @pytest.mark.asyncio
    async def test_persist_song_edit_maps_title_column(self, repository, seed) -> None:
        await seed.queue("ABC123", "a")
        await repository.persist_song_status("a", "waiting", {"title": "Waterloo"})
        assert (await repository.load_song("a")).title == "Waterloo"

    @pytest.mark.asyncio
    async def test_persist_session_tips_and_duration(self, repository, seed) -> None:
        await seed.session("ABC123")
        await repository.persist_session_status(
            "ABC123",
            "active",
            {"song_duration_seconds": 180, "tip_handles": TipHandles(venmo_handle="@dj")},
        )
        session = await repository.load_session("ABC123")
        assert session.song_duration_seconds == 180
        assert session.tip_handles.venmo_handle == "@dj"

    @pytest.mark.asyncio
    async def test_persist_missing_raises_not_found(self, repository, seed) -> None:
        with pytest.raises(NotFoundError):
            await repository.persist_song_status("nope", "playing", {})
        with pytest.raises(NotFoundError):
            await repository.persist_session_status("NOPE", "paused", {})


class TestReorder:
    @pytest.mark.asyncio
    async def test_reorder_applies_all(self, repository, seed) -> None:
        await seed.queue("ABC123", "a", "b", "c")
        await repository.persist_reorder(
            "ABC123", [PositionUpdate("a", 3), PositionUpdate("c", 1)]
        )
        songs = await repository.load_sibling_songs("ABC123")
        assert [s.song_id for s in songs] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_reorder_is_all_or_nothing(self, repository, seed) -> None:
        await seed.queue("ABC123", "a", "b")
        with pytest.raises(NotFoundError):
            await repository.persist_reorder(
                "ABC123", [PositionUpdate("a", 2), PositionUpdate("ghost", 1)]
            )
        songs = await repository.load_sibling_songs("ABC123")
        assert [(s.song_id, s.position) for s in songs] == [("a", 1), ("b", 2)]

    @pytest.mark.asyncio
    async def test_reorder_rejects_song_from_other_session(self, repository, seed) -> None:
        await seed.queue("ABC123", "a")
        await seed.queue("OTHER1", "x")
        with pytest.raises(NotFoundError):
            await repository.persist_reorder("ABC123", [PositionUpdate("x", 5)])
        assert (await repository.load_song("x")).position == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_database_errors_become_persistence_errors(self) -> None:
        repo = SqlQueueRepository(_broken_factory)  # type: ignore[arg-type]
        with pytest.raises(PersistenceError) as exc:
            await repo.persist_song_status("a", "playing", {})
        assert exc.value.operation == "persist status"
        assert isinstance(exc.value.cause, OperationalError)

        with pytest.raises(PersistenceError):
            await repo.load_session("ABC123")
        with pytest.raises(PersistenceError):
            await repo.persist_reorder("ABC123", [PositionUpdate("a", 1)])


def test_as_utc() -> None:
    naive = datetime(2026, 1, 1, 12, 0)
    assert as_utc(naive).tzinfo is timezone.utc
    assert as_utc(None) is None
    assert as_utc(T0) is T0
