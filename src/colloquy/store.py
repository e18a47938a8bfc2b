from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Callable, Optional

from colloquy.errors import SessionNotFoundError
from colloquy.session import Session

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Whole-session key/value repository.

    Implementations only provide ``load_session``/``save_session`` and
    friends; there is no partial-field update.  Every read-modify-write
    cycle goes through :meth:`update`, which serialises writers per session
    so that a title write cannot clobber a turn commit.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @abstractmethod
    async def load_session(self, session_id: str) -> Session:
        """Return the latest persisted session.

        Raises:
            SessionNotFoundError: If no session has that id.
        """

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Replace the persisted session with *session*."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def list_sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""

    async def update(
        self, session_id: str, mutate: Callable[[Session], Optional[bool]],
    ) -> Session:
        """Load the latest session, apply *mutate* and save it.

        If *mutate* returns ``False`` the session is left untouched and
        not saved.  If it raises, nothing is saved and the exception
        propagates.
        """
        async with self._locks[session_id]:
            session = await self.load_session(session_id)
            if mutate(session) is False:
                return session
            session.touch()
            await self.save_session(session)
            return session


class InMemorySessionStore(SessionStore):
    """Dict-backed store; hands out copies so callers never share state."""

    def __init__(self) -> None:
        super().__init__()
        self._sessions: dict[str, Session] = {}

    async def load_session(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id].model_copy(deep=True)
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    async def save_session(self, session: Session) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def list_sessions(self) -> list[Session]:
        return sorted(
            (s.model_copy(deep=True) for s in self._sessions.values()),
            key=lambda s: s.updated_at,
            reverse=True,
        )


_SESSIONS_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);",
]


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteSessionStore(SessionStore):
    """SQLite-backed store keeping one JSON document per session."""

    def __init__(self, db_path: str) -> None:
        super().__init__()
        path = Path(db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        if path.suffix != ".db":
            path = path.with_suffix(".db")
        self._db_path = str(path)
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Initialise database schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> None:
            with sqlite3.connect(self._db_path) as connection:
                _ensure_pragmas(connection)
                connection.execute(_SESSIONS_DDL)
                for statement in _CREATE_INDEXES:
                    connection.execute(statement)
                connection.commit()

        await asyncio.to_thread(_init)
        logger.info("Session database initialised at %s", self._db_path)

    async def load_session(self, session_id: str) -> Session:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM sessions WHERE id = ?",
            (session_id,),
        )
        if row is None:
            raise SessionNotFoundError(session_id)
        return Session.model_validate_json(row["data"])

    async def save_session(self, session: Session) -> None:
        async with self._write_lock:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO sessions (id, name, data, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET name = excluded.name,"
                " data = excluded.data, updated_at = excluded.updated_at",
                (
                    session.session_id,
                    session.name,
                    session.model_dump_json(),
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                ),
            )

    async def delete_session(self, session_id: str) -> None:
        async with self._write_lock:
            await asyncio.to_thread(
                self._execute,
                "DELETE FROM sessions WHERE id = ?",
                (session_id,),
            )

    async def list_sessions(self) -> list[Session]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM sessions ORDER BY updated_at DESC",
        )
        return [Session.model_validate_json(row["data"]) for row in rows]

    def _execute(self, query: str, params: tuple = ()) -> None:
        with sqlite3.connect(self._db_path) as connection:
            _ensure_pragmas(connection)
            connection.execute(query, params)
            connection.commit()

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with sqlite3.connect(self._db_path) as connection:
            connection.row_factory = sqlite3.Row
            _ensure_pragmas(connection)
            return connection.execute(query, params).fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with sqlite3.connect(self._db_path) as connection:
            connection.row_factory = sqlite3.Row
            _ensure_pragmas(connection)
            return connection.execute(query, params).fetchone()
