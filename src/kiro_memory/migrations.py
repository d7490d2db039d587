"""Versioned schema migrations.

Each migration runs once, inside a single transaction together with its
``schema_versions`` ledger row. A failed migration rolls back and leaves
the ledger where it was, so the next open simply retries it.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, TYPE_CHECKING

import aiosqlite

from .exceptions import MigrationError
from .logging_config import get_logger, log_duration

if TYPE_CHECKING:
    from .db import DatabaseManager

logger = get_logger("migrations")


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: Callable[[aiosqlite.Connection], Awaitable[None]]


async def _run_statements(conn: aiosqlite.Connection, statements: List[str]) -> None:
    for statement in statements:
        await conn.execute(statement)


async def _core_tables(conn: aiosqlite.Connection) -> None:
    await _run_statements(conn, [
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content_session_id TEXT NOT NULL UNIQUE,
            project TEXT NOT NULL,
            user_prompt TEXT NOT NULL,
            memory_session_id TEXT,
            status TEXT DEFAULT 'active',
            started_at TEXT NOT NULL,
            started_at_epoch INTEGER NOT NULL,
            completed_at TEXT,
            completed_at_epoch INTEGER
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            memory_session_id TEXT NOT NULL,
            project TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            subtitle TEXT,
            text TEXT,
            narrative TEXT,
            facts TEXT,
            concepts TEXT,
            files_read TEXT,
            files_modified TEXT,
            prompt_number INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS summaries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            project TEXT NOT NULL,
            request TEXT,
            investigated TEXT,
            learned TEXT,
            completed TEXT,
            next_steps TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS prompts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content_session_id TEXT NOT NULL,
            project TEXT NOT NULL,
            prompt_number INTEGER NOT NULL,
            prompt_text TEXT NOT NULL,
            created_at TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project)",
        "CREATE INDEX IF NOT EXISTS idx_observations_project ON observations(project)",
        "CREATE INDEX IF NOT EXISTS idx_observations_session ON observations(memory_session_id)",
        "CREATE INDEX IF NOT EXISTS idx_summaries_session ON summaries(session_id)",
        "CREATE INDEX IF NOT EXISTS idx_prompts_session ON prompts(content_session_id)",
    ])


async def _full_text_index(conn: aiosqlite.Connection) -> None:
    await _run_statements(conn, [
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
            title,
            text,
            narrative,
            concepts,
            content='observations',
            content_rowid='id'
        )
        """,
        """
        CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
            INSERT INTO observations_fts(rowid, title, text, narrative, concepts)
            VALUES (new.id, new.title, new.text, new.narrative, new.concepts);
        END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, title, text, narrative, concepts)
            VALUES ('delete', old.id, old.title, old.text, old.narrative, old.concepts);
        END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, title, text, narrative, concepts)
            VALUES ('delete', old.id, old.title, old.text, old.narrative, old.concepts);
            INSERT INTO observations_fts(rowid, title, text, narrative, concepts)
            VALUES (new.id, new.title, new.text, new.narrative, new.concepts);
        END
        """,
        # Backfill rows written before the index existed
        "INSERT INTO observations_fts(observations_fts) VALUES ('rebuild')",
        "CREATE INDEX IF NOT EXISTS idx_observations_type ON observations(type)",
        "CREATE INDEX IF NOT EXISTS idx_observations_epoch ON observations(created_at_epoch)",
        "CREATE INDEX IF NOT EXISTS idx_summaries_project ON summaries(project)",
        "CREATE INDEX IF NOT EXISTS idx_summaries_epoch ON summaries(created_at_epoch)",
        "CREATE INDEX IF NOT EXISTS idx_prompts_project ON prompts(project)",
    ])


async def _project_aliases(conn: aiosqlite.Connection) -> None:
    await _run_statements(conn, [
        """
        CREATE TABLE IF NOT EXISTS project_aliases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_name TEXT NOT NULL UNIQUE,
            display_name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_project_aliases_name ON project_aliases(project_name)",
    ])


async def _embedding_table(conn: aiosqlite.Connection) -> None:
    await _run_statements(conn, [
        """
        CREATE TABLE IF NOT EXISTS observation_embeddings (
            observation_id INTEGER PRIMARY KEY,
            embedding BLOB NOT NULL,
            model TEXT NOT NULL,
            dimensions INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (observation_id) REFERENCES observations(id) ON DELETE CASCADE
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_embeddings_model ON observation_embeddings(model)",
    ])


async def _access_and_staleness(conn: aiosqlite.Connection) -> None:
    async with conn.execute("PRAGMA table_info(observations)") as cursor:
        rows = await cursor.fetchall()
        existing = {row["name"] for row in rows}

    if "last_accessed_epoch" not in existing:
        await conn.execute("ALTER TABLE observations ADD COLUMN last_accessed_epoch INTEGER")
    if "is_stale" not in existing:
        await conn.execute("ALTER TABLE observations ADD COLUMN is_stale INTEGER DEFAULT 0")
    await _run_statements(conn, [
        "CREATE INDEX IF NOT EXISTS idx_observations_last_accessed ON observations(last_accessed_epoch)",
        "CREATE INDEX IF NOT EXISTS idx_observations_stale ON observations(is_stale)",
    ])


MIGRATIONS: List[Migration] = [
    Migration(1, "core tables", _core_tables),
    Migration(2, "full-text index and sync triggers", _full_text_index),
    Migration(3, "project aliases", _project_aliases),
    Migration(4, "observation embeddings", _embedding_table),
    Migration(5, "access time and staleness columns", _access_and_staleness),
]

LATEST_VERSION = max(m.version for m in MIGRATIONS)


class MigrationRunner:
    """Applies pending migrations against a connected database.

    Usage:
        runner = MigrationRunner(db)
        if await runner.current_version() < LATEST_VERSION:
            applied = await runner.run()
    """

    def __init__(self, db: "DatabaseManager", migrations: List[Migration] = None):
        self.db = db
        self.migrations = sorted(migrations or MIGRATIONS, key=lambda m: m.version)

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    async def _ensure_ledger(self) -> None:
        await self.db.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_versions (
                id INTEGER PRIMARY KEY,
                version INTEGER UNIQUE NOT NULL,
                description TEXT,
                applied_at TEXT NOT NULL
            )
            """
        )

    async def current_version(self) -> int:
        """Highest applied version, 0 for a fresh store. A single read."""
        try:
            async with self.db.conn.execute("SELECT MAX(version) AS version FROM schema_versions") as cursor:
                row = await cursor.fetchone()
        except sqlite3.OperationalError:
            # Ledger table does not exist yet
            return 0
        if not row:
            return 0
        return row["version"] or 0

    async def run(self) -> List[int]:
        """Apply every migration newer than the ledger.

        Returns:
            Versions applied during this call

        Raises:
            MigrationError: If a migration fails; its changes are rolled back
        """
        await self._ensure_ledger()
        current = await self.current_version()
        applied: List[int] = []

        for migration in self.migrations:
            if migration.version <= current:
                continue
            logger.info(f"Applying migration {migration.version}: {migration.description}")
            try:
                with log_duration(logger, f"migration {migration.version}"):
                    async with self.db.transaction():
                        await migration.up(self.db.conn)
                        await self.db.conn.execute(
                            "INSERT INTO schema_versions (version, description, applied_at) VALUES (?, ?, ?)",
                            (
                                migration.version,
                                migration.description,
                                datetime.now(timezone.utc).isoformat(),
                            ),
                        )
            except Exception as e:
                logger.error(f"Migration {migration.version} failed, ledger left at {current}: {e}")
                raise MigrationError(migration.version, str(e)) from e
            current = migration.version
            applied.append(migration.version)

        if applied:
            logger.info(f"Schema migrated to version {current}")
        return applied
