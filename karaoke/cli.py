"""Karaoke CLI: Typer application root.

Entry point for the ``karaoke`` console script:

    karaoke serve              run the HTTP API under uvicorn
    karaoke init-db            create any missing tables
    karaoke sessions           table of sessions with queue counts
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import AsyncGenerator
from typing import Optional

import typer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from karaoke.config import settings
from karaoke.core.records import SessionStatus
from karaoke.db.database import close_db, get_database_url, init_db
from karaoke.services.queue_service import SessionStats, list_sessions_with_stats

logger = logging.getLogger(__name__)


class ExitCode(enum.IntEnum):
    """CLI exit codes.

    0 - success
    1 - user error (bad arguments, invalid input)
    3 - database / internal error
    """

    SUCCESS = 0
    USER_ERROR = 1
    INTERNAL_ERROR = 3


cli = typer.Typer(
    name="karaoke",
    help="Karaoke Queue: song requests for live karaoke nights.",
    no_args_is_help=True,
)


@contextlib.asynccontextmanager
async def open_session(url: str | None = None) -> AsyncGenerator[AsyncSession, None]:
    """Open a standalone async DB session outside FastAPI DI.

    Commits on clean exit, rolls back on exception, disposes the engine.
    """
    engine = create_async_engine(url or get_database_url(), echo=False)
    factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    try:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command("serve", help="Run the HTTP API.")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from settings)."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default from settings).", min=1),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development)."),
) -> None:
    import uvicorn

    uvicorn.run(
        "karaoke.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
    )


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@cli.command("init-db", help="Create missing database tables.")
def init_db_cmd(
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="Override KARAOKE_DATABASE_URL."
    ),
) -> None:
    async def _run() -> None:
        try:
            await init_db(database_url)
        finally:
            await close_db()

    try:
        asyncio.run(_run())
    except Exception as exc:
        typer.echo(f"❌ init-db failed: {exc}")
        logger.error("❌ init-db error: %s", exc, exc_info=True)
        raise typer.Exit(code=ExitCode.INTERNAL_ERROR)
    typer.echo("✅ Database ready")


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


def _render_sessions(rows: list[SessionStats]) -> None:
    typer.echo(f"{'CODE':<8} {'STATUS':<8} {'CREATED':<17} {'SONGS':>5} {'WAIT':>5} {'DONE':>5} {'SKIP':>5} {'SINGERS':>7}")
    for row in rows:
        created = row.created_at.strftime("%Y-%m-%d %H:%M") if row.created_at else "-"
        typer.echo(
            f"{row.session_id:<8} {row.status:<8} {created:<17} {row.total_songs:>5} "
            f"{row.waiting_songs:>5} {row.completed_songs:>5} {row.skipped_songs:>5} "
            f"{row.unique_singers:>7}"
        )


async def _sessions_async(*, session: AsyncSession, status: str | None) -> None:
    """Core of ``karaoke sessions``; injectable for tests."""
    rows = await list_sessions_with_stats(session)
    if status:
        rows = [r for r in rows if r.status == status]
    if not rows:
        typer.echo("No sessions yet")
        raise typer.Exit(code=ExitCode.SUCCESS)
    _render_sessions(rows)


@cli.command("sessions", help="List sessions with queue counts, newest first.")
def sessions(
    status: Optional[str] = typer.Option(
        None, "--status", help="Only show sessions in this state (active, paused, ending, ended)."
    ),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="Override KARAOKE_DATABASE_URL."
    ),
) -> None:
    if status is not None and status not in {s.value for s in SessionStatus}:
        typer.echo(f"❌ --status: unknown session state {status!r}")
        raise typer.Exit(code=ExitCode.USER_ERROR)

    async def _run() -> None:
        async with open_session(database_url) as session:
            await _sessions_async(session=session, status=status)

    try:
        asyncio.run(_run())
    except typer.Exit:
        raise
    except Exception as exc:
        typer.echo(f"❌ karaoke sessions failed: {exc}")
        logger.error("❌ karaoke sessions error: %s", exc, exc_info=True)
        raise typer.Exit(code=ExitCode.INTERNAL_ERROR)


if __name__ == "__main__":
    cli()
