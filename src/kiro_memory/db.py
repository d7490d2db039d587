import asyncio
import contextvars
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from .exceptions import (
    DatabaseConnectionError,
    DatabaseIntegrityError,
    StorageError,
)
from .logging_config import get_logger
from .migrations import LATEST_VERSION, MigrationRunner
from .models import (
    LexicalHit,
    Observation,
    ProjectAlias,
    ProjectStats,
    SearchFilters,
    Session,
    Summary,
    TimelineEntry,
    UserPrompt,
)

logger = get_logger("db")

MAX_QUERY_CHARS = 10_000
MAX_QUERY_TOKENS = 100

# Task currently holding the write transaction
_tx_owner: contextvars.ContextVar[Optional[asyncio.Task]] = contextvars.ContextVar(
    "kiro_memory_tx_owner", default=None
)


def now_stamp() -> Tuple[str, int]:
    """Return (ISO timestamp, epoch milliseconds) for a new row."""
    now = datetime.now(timezone.utc)
    return now.isoformat(), int(now.timestamp() * 1000)


def stamp_from_epoch(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def tokenize_query(query: Optional[str]) -> str:
    """Build a literal FTS5 MATCH expression from free text.

    Every token is quoted so FTS operators (AND, NEAR, *, column filters)
    are matched as plain words.
    """
    if not query:
        return ""
    tokens = query[:MAX_QUERY_CHARS].split()[:MAX_QUERY_TOKENS]
    quoted = []
    for token in tokens:
        cleaned = token.replace('"', "").replace("'", "")
        if cleaned:
            quoted.append(f'"{cleaned}"')
    return " ".join(quoted)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: Optional[aiosqlite.Connection] = None
        # Separate read-only connection, WAL gives it a committed snapshot
        self.read_conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self, skip_migrations: bool = False) -> None:
        """Open the store and bring the schema up to date.

        Args:
            skip_migrations: Skip even the schema version check. Only for
                callers that know the schema is current.
        """
        logger.debug(f"Connecting to database: {self.db_path}")
        start = time.perf_counter()
        try:
            # Autocommit mode, transactions are opened explicitly by transaction()
            self.conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            self.conn.row_factory = aiosqlite.Row
            await self._configure()
            if not skip_migrations:
                await self.ensure_schema()
            self.read_conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            self.read_conn.row_factory = aiosqlite.Row
            await self._configure_reader()
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(f"Database connected in {duration_ms:.2f}ms: {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to connect to database: {self.db_path}: {e}")
            await self._close_connections()
            raise DatabaseConnectionError(str(self.db_path), str(e)) from e

    async def close(self) -> None:
        if self.conn:
            logger.debug("Closing database connection")
            await self._close_connections()
            logger.info("Database connection closed")

    async def _close_connections(self) -> None:
        if self.read_conn:
            await self.read_conn.close()
            self.read_conn = None
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _configure(self) -> None:
        await self.conn.execute("PRAGMA journal_mode = WAL")
        await self.conn.execute("PRAGMA synchronous = NORMAL")
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self.conn.execute("PRAGMA busy_timeout = 5000")
        await self.conn.execute("PRAGMA temp_store = MEMORY")
        await self.conn.execute("PRAGMA cache_size = 10000")
        await self.conn.execute("PRAGMA case_sensitive_like = ON")

    async def _configure_reader(self) -> None:
        await self.read_conn.execute("PRAGMA query_only = ON")
        await self.read_conn.execute("PRAGMA busy_timeout = 5000")
        await self.read_conn.execute("PRAGMA temp_store = MEMORY")
        await self.read_conn.execute("PRAGMA cache_size = 10000")
        await self.read_conn.execute("PRAGMA case_sensitive_like = ON")

    async def ensure_schema(self) -> List[int]:
        """Cheap version check; runs the migration list only when behind."""
        runner = MigrationRunner(self)
        if await runner.current_version() >= LATEST_VERSION:
            return []
        return await runner.run()

    async def schema_version(self) -> int:
        return await MigrationRunner(self).current_version()

    def _require_conn(self) -> aiosqlite.Connection:
        if not self.conn:
            raise DatabaseConnectionError(str(self.db_path), "Database not connected")
        return self.conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one atomic unit.

        Nested use inside the owning task joins the outer transaction.
        Any error rolls everything back and is re-raised as a StorageError.

        Usage:
            async with db.transaction() as conn:
                await conn.execute(...)
        """
        conn = self._require_conn()
        task = asyncio.current_task()
        if task is not None and _tx_owner.get() is task:
            yield conn
            return

        async with self._write_lock:
            token = _tx_owner.set(task)
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException as e:
                # SQLite may already have rolled back on its own (disk full, I/O error)
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.IntegrityError):
                    logger.error(f"Integrity error, transaction rolled back: {e}")
                    raise DatabaseIntegrityError(str(e)) from e
                if isinstance(e, sqlite3.Error):
                    logger.error(f"Storage error, transaction rolled back: {e}")
                    raise StorageError(str(e)) from e
                raise
            else:
                await conn.execute("COMMIT")
            finally:
                _tx_owner.reset(token)

    async def _insert(self, sql: str, params: Tuple[Any, ...]) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            row_id = cursor.lastrowid
            await cursor.close()
        return int(row_id)

    async def _update(self, sql: str, params: Tuple[Any, ...]) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            count = cursor.rowcount
            await cursor.close()
        return count

    def _reader(self) -> aiosqlite.Connection:
        """Connection for reads: the writer inside its own transaction, else the reader."""
        conn = self._require_conn()
        task = asyncio.current_task()
        if self.read_conn is None or (task is not None and _tx_owner.get() is task):
            return conn
        return self.read_conn

    async def fetchall(self, sql: str, params: Any = ()) -> List[aiosqlite.Row]:
        async with self._reader().execute(sql, params) as cursor:
            return await cursor.fetchall()

    async def fetchone(self, sql: str, params: Any = ()) -> Optional[aiosqlite.Row]:
        async with self._reader().execute(sql, params) as cursor:
            return await cursor.fetchone()

    # =========================================================================
    # Observations
    # =========================================================================

    async def add_observation(
        self,
        memory_session_id: str,
        project: str,
        obs_type: str,
        title: str,
        subtitle: Optional[str] = None,
        text: Optional[str] = None,
        narrative: Optional[str] = None,
        facts: Optional[str] = None,
        concepts: Optional[str] = None,
        files_read: Optional[str] = None,
        files_modified: Optional[str] = None,
        prompt_number: int = 0,
        created_at_epoch: Optional[int] = None,
    ) -> int:
        if created_at_epoch is None:
            created_at, created_at_epoch = now_stamp()
        else:
            created_at = stamp_from_epoch(created_at_epoch)
        logger.debug(f"Adding observation: type={obs_type}, project={project}")
        start = time.perf_counter()
        obs_id = await self._insert(
            """
            INSERT INTO observations (
                memory_session_id,
                project,
                type,
                title,
                subtitle,
                text,
                narrative,
                facts,
                concepts,
                files_read,
                files_modified,
                prompt_number,
                created_at,
                created_at_epoch
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory_session_id,
                project,
                obs_type,
                title,
                subtitle,
                text,
                narrative,
                facts,
                concepts,
                files_read,
                files_modified,
                prompt_number,
                created_at,
                created_at_epoch,
            ),
        )
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Observation added in {duration_ms:.2f}ms: {obs_id}")
        return obs_id

    async def get_observation(self, obs_id: int) -> Optional[Observation]:
        row = await self.fetchone("SELECT * FROM observations WHERE id = ?", (obs_id,))
        if not row:
            return None
        return self._row_to_observation(row)

    async def get_observations_by_ids(self, ids: List[int]) -> List[Observation]:
        """Fetch observations by id, newest first. Unknown ids are ignored."""
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self.fetchall(
            f"SELECT * FROM observations WHERE id IN ({placeholders}) ORDER BY created_at_epoch DESC, id DESC",
            list(ids),
        )
        return [self._row_to_observation(row) for row in rows]

    async def get_observations_by_session(self, memory_session_id: str) -> List[Observation]:
        rows = await self.fetchall(
            "SELECT * FROM observations WHERE memory_session_id = ? ORDER BY prompt_number ASC, id ASC",
            (memory_session_id,),
        )
        return [self._row_to_observation(row) for row in rows]

    async def get_observations_by_project(self, project: str, limit: int = 100) -> List[Observation]:
        rows = await self.fetchall(
            "SELECT * FROM observations WHERE project = ? ORDER BY created_at_epoch DESC, id DESC LIMIT ?",
            (project, limit),
        )
        return [self._row_to_observation(row) for row in rows]

    async def list_observations(
        self,
        offset: int = 0,
        limit: int = 50,
        project: Optional[str] = None,
    ) -> List[Observation]:
        params: List[Any] = []
        sql = "SELECT * FROM observations"
        if project:
            sql += " WHERE project = ?"
            params.append(project)
        sql += " ORDER BY created_at_epoch DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = await self.fetchall(sql, params)
        return [self._row_to_observation(row) for row in rows]

    async def get_observations_with_files(self, project: Optional[str] = None) -> List[Observation]:
        """Observations that reference modified files (maintenance input)."""
        params: List[Any] = []
        conditions = ["files_modified IS NOT NULL", "TRIM(files_modified) != ''"]
        if project:
            conditions.append("project = ?")
            params.append(project)
        rows = await self.fetchall(
            f"""
            SELECT * FROM observations
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at_epoch DESC, id DESC
            """,
            params,
        )
        return [self._row_to_observation(row) for row in rows]

    async def update_observation_content(self, obs_id: int, title: str, text: Optional[str]) -> int:
        return await self._update(
            "UPDATE observations SET title = ?, text = ? WHERE id = ?",
            (title, text, obs_id),
        )

    async def delete_observation(self, obs_id: int) -> int:
        return await self._update("DELETE FROM observations WHERE id = ?", (obs_id,))

    async def delete_observations(self, ids: List[int]) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        return await self._update(f"DELETE FROM observations WHERE id IN ({placeholders})", tuple(ids))

    async def delete_embedding(self, obs_id: int) -> int:
        return await self._update("DELETE FROM observation_embeddings WHERE observation_id = ?", (obs_id,))

    async def touch_last_accessed(self, ids: List[int], epoch_ms: Optional[int] = None) -> int:
        if not ids:
            return 0
        if epoch_ms is None:
            epoch_ms = now_stamp()[1]
        placeholders = ",".join("?" for _ in ids)
        return await self._update(
            f"UPDATE observations SET last_accessed_epoch = ? WHERE id IN ({placeholders})",
            (epoch_ms, *ids),
        )

    async def set_stale(self, ids: List[int], stale: bool = True) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        return await self._update(
            f"UPDATE observations SET is_stale = ? WHERE id IN ({placeholders})",
            (1 if stale else 0, *ids),
        )

    # =========================================================================
    # Full-text search
    # =========================================================================

    def _filter_clauses(
        self,
        filters: SearchFilters,
        params: List[Any],
        prefix: str = "",
        with_type: bool = True,
    ) -> List[str]:
        conditions: List[str] = []
        if filters.project:
            conditions.append(f"{prefix}project = ?")
            params.append(filters.project)
        if with_type and filters.type:
            conditions.append(f"{prefix}type = ?")
            params.append(filters.type)
        if filters.date_start is not None:
            conditions.append(f"{prefix}created_at_epoch >= ?")
            params.append(filters.date_start)
        if filters.date_end is not None:
            conditions.append(f"{prefix}created_at_epoch <= ?")
            params.append(filters.date_end)
        return conditions

    async def search_observations_fts(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
    ) -> List[LexicalHit]:
        """Full-text search ordered by bm25 rank (more negative is better).

        Falls back to a substring scan when the index cannot answer.
        """
        filters = filters or SearchFilters()
        match = tokenize_query(query)
        if not match:
            return []
        logger.debug(f"FTS search: query='{match}', project={filters.project}, limit={filters.limit}")
        start = time.perf_counter()

        params: List[Any] = [match]
        conditions = ["observations_fts MATCH ?"]
        conditions.extend(self._filter_clauses(filters, params, prefix="o."))
        sql = f"""
            SELECT o.*, bm25(observations_fts) AS fts_rank
            FROM observations_fts
            JOIN observations o ON o.id = observations_fts.rowid
            WHERE {" AND ".join(conditions)}
            ORDER BY fts_rank ASC, o.id DESC
            LIMIT ?
        """
        params.append(filters.limit)

        try:
            rows = await self.fetchall(sql, params)
        except sqlite3.OperationalError as e:
            logger.warning(f"Full-text index unavailable, degrading to substring search: {e}")
            return await self.search_observations_like(query, filters)

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"FTS search completed in {duration_ms:.2f}ms, found {len(rows)} results")
        return [
            LexicalHit(observation=self._row_to_observation(row), rank=float(row["fts_rank"]))
            for row in rows
        ]

    async def search_observations_like(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
    ) -> List[LexicalHit]:
        """Substring fallback over title, text, narrative and concepts, newest first."""
        filters = filters or SearchFilters()
        term = (query or "")[:MAX_QUERY_CHARS].strip()
        if not term:
            return []
        pattern = f"%{escape_like(term)}%"
        params: List[Any] = [pattern, pattern, pattern, pattern]
        conditions = [
            "(title LIKE ? ESCAPE '\\' OR text LIKE ? ESCAPE '\\' "
            "OR narrative LIKE ? ESCAPE '\\' OR concepts LIKE ? ESCAPE '\\')"
        ]
        conditions.extend(self._filter_clauses(filters, params))
        params.append(filters.limit)
        rows = await self.fetchall(
            f"""
            SELECT * FROM observations
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at_epoch DESC, id DESC
            LIMIT ?
            """,
            params,
        )
        # No relevance rank in substring mode
        return [LexicalHit(observation=self._row_to_observation(row), rank=0.0) for row in rows]

    async def search_summaries(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
    ) -> List[Summary]:
        filters = filters or SearchFilters()
        term = (query or "")[:MAX_QUERY_CHARS].strip()
        if not term:
            return []
        pattern = f"%{escape_like(term)}%"
        params: List[Any] = [pattern] * 5
        conditions = [
            "(request LIKE ? ESCAPE '\\' OR learned LIKE ? ESCAPE '\\' OR completed LIKE ? ESCAPE '\\' "
            "OR notes LIKE ? ESCAPE '\\' OR next_steps LIKE ? ESCAPE '\\')"
        ]
        conditions.extend(self._filter_clauses(filters, params, with_type=False))
        params.append(filters.limit)
        rows = await self.fetchall(
            f"""
            SELECT * FROM summaries
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at_epoch DESC, id DESC
            LIMIT ?
            """,
            params,
        )
        return [self._row_to_summary(row) for row in rows]

    async def get_timeline(
        self,
        anchor_id: int,
        depth_before: int = 5,
        depth_after: int = 5,
    ) -> List[TimelineEntry]:
        """Chronological window of observations around an anchor."""
        anchor = await self.fetchone(
            "SELECT id, title, text, project, created_at, created_at_epoch FROM observations WHERE id = ?",
            (anchor_id,),
        )
        if not anchor:
            return []
        anchor_epoch = anchor["created_at_epoch"]

        before = await self.fetchall(
            """
            SELECT id, title, text, project, created_at, created_at_epoch
            FROM observations
            WHERE created_at_epoch < ? OR (created_at_epoch = ? AND id < ?)
            ORDER BY created_at_epoch DESC, id DESC
            LIMIT ?
            """,
            (anchor_epoch, anchor_epoch, anchor_id, depth_before),
        )
        after = await self.fetchall(
            """
            SELECT id, title, text, project, created_at, created_at_epoch
            FROM observations
            WHERE created_at_epoch > ? OR (created_at_epoch = ? AND id > ?)
            ORDER BY created_at_epoch ASC, id ASC
            LIMIT ?
            """,
            (anchor_epoch, anchor_epoch, anchor_id, depth_after),
        )
        rows = list(reversed(before)) + [anchor] + list(after)
        return [
            TimelineEntry(
                id=row["id"],
                title=row["title"],
                content=row["text"],
                project=row["project"],
                created_at=row["created_at"],
                created_at_epoch=row["created_at_epoch"],
            )
            for row in rows
        ]

    async def get_project_stats(self, project: str) -> ProjectStats:
        counts: Dict[str, int] = {}
        for table in ("observations", "summaries", "sessions", "prompts"):
            row = await self.fetchone(f"SELECT COUNT(*) AS count FROM {table} WHERE project = ?", (project,))
            counts[table] = row["count"] if row else 0
        return ProjectStats(**counts)

    async def count_rows(self, table: str, project: Optional[str] = None) -> int:
        """Row count of a record table, optionally for one project."""
        if table not in {"observations", "summaries", "sessions", "prompts"}:
            raise StorageError(f"Unknown table: {table}")
        sql = f"SELECT COUNT(*) AS count FROM {table}"
        params: List[Any] = []
        if project:
            sql += " WHERE project = ?"
            params.append(project)
        row = await self.fetchone(sql, params)
        return row["count"] if row else 0

    async def list_projects(self) -> List[str]:
        rows = await self.fetchall(
            """
            SELECT project FROM observations
            UNION SELECT project FROM summaries
            UNION SELECT project FROM prompts
            UNION SELECT project FROM sessions
            ORDER BY project
            """
        )
        return [row["project"] for row in rows]

    # =========================================================================
    # Summaries
    # =========================================================================

    async def add_summary(
        self,
        session_id: str,
        project: str,
        request: Optional[str] = None,
        investigated: Optional[str] = None,
        learned: Optional[str] = None,
        completed: Optional[str] = None,
        next_steps: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        created_at, created_at_epoch = now_stamp()
        return await self._insert(
            """
            INSERT INTO summaries (
                session_id, project, request, investigated, learned,
                completed, next_steps, notes, created_at, created_at_epoch
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                project,
                request,
                investigated,
                learned,
                completed,
                next_steps,
                notes,
                created_at,
                created_at_epoch,
            ),
        )

    async def get_summary_by_session(self, session_id: str) -> Optional[Summary]:
        row = await self.fetchone(
            "SELECT * FROM summaries WHERE session_id = ? ORDER BY created_at_epoch DESC, id DESC LIMIT 1",
            (session_id,),
        )
        return self._row_to_summary(row) if row else None

    async def get_summaries_by_project(self, project: str, limit: int = 50) -> List[Summary]:
        rows = await self.fetchall(
            "SELECT * FROM summaries WHERE project = ? ORDER BY created_at_epoch DESC, id DESC LIMIT ?",
            (project, limit),
        )
        return [self._row_to_summary(row) for row in rows]

    async def list_summaries(
        self,
        offset: int = 0,
        limit: int = 20,
        project: Optional[str] = None,
    ) -> List[Summary]:
        params: List[Any] = []
        sql = "SELECT * FROM summaries"
        if project:
            sql += " WHERE project = ?"
            params.append(project)
        sql += " ORDER BY created_at_epoch DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = await self.fetchall(sql, params)
        return [self._row_to_summary(row) for row in rows]

    # =========================================================================
    # Prompts
    # =========================================================================

    async def add_prompt(
        self,
        content_session_id: str,
        project: str,
        prompt_number: int,
        prompt_text: str,
    ) -> int:
        created_at, created_at_epoch = now_stamp()
        return await self._insert(
            """
            INSERT INTO prompts (content_session_id, project, prompt_number, prompt_text, created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (content_session_id, project, prompt_number, prompt_text, created_at, created_at_epoch),
        )

    async def get_prompts_by_session(self, content_session_id: str) -> List[UserPrompt]:
        rows = await self.fetchall(
            "SELECT * FROM prompts WHERE content_session_id = ? ORDER BY prompt_number ASC, id ASC",
            (content_session_id,),
        )
        return [self._row_to_prompt(row) for row in rows]

    async def get_prompts_by_project(self, project: str, limit: int = 100) -> List[UserPrompt]:
        rows = await self.fetchall(
            "SELECT * FROM prompts WHERE project = ? ORDER BY created_at_epoch DESC, id DESC LIMIT ?",
            (project, limit),
        )
        return [self._row_to_prompt(row) for row in rows]

    async def get_latest_prompt(self, content_session_id: str) -> Optional[UserPrompt]:
        row = await self.fetchone(
            "SELECT * FROM prompts WHERE content_session_id = ? ORDER BY prompt_number DESC, id DESC LIMIT 1",
            (content_session_id,),
        )
        return self._row_to_prompt(row) if row else None

    async def list_prompts(
        self,
        offset: int = 0,
        limit: int = 20,
        project: Optional[str] = None,
    ) -> List[UserPrompt]:
        params: List[Any] = []
        sql = "SELECT * FROM prompts"
        if project:
            sql += " WHERE project = ?"
            params.append(project)
        sql += " ORDER BY created_at_epoch DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = await self.fetchall(sql, params)
        return [self._row_to_prompt(row) for row in rows]

    # =========================================================================
    # Sessions
    # =========================================================================

    async def add_session(self, content_session_id: str, project: str, user_prompt: str) -> int:
        started_at, started_at_epoch = now_stamp()
        return await self._insert(
            """
            INSERT INTO sessions (content_session_id, project, user_prompt, status, started_at, started_at_epoch)
            VALUES (?, ?, ?, 'active', ?, ?)
            """,
            (content_session_id, project, user_prompt, started_at, started_at_epoch),
        )

    async def get_session(self, session_id: int) -> Optional[Session]:
        row = await self.fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    async def get_session_by_content_id(self, content_session_id: str) -> Optional[Session]:
        row = await self.fetchone(
            "SELECT * FROM sessions WHERE content_session_id = ?", (content_session_id,)
        )
        return self._row_to_session(row) if row else None

    async def update_memory_session_id(self, session_id: int, memory_session_id: str) -> int:
        return await self._update(
            "UPDATE sessions SET memory_session_id = ? WHERE id = ?",
            (memory_session_id, session_id),
        )

    async def _finish_session(self, session_id: int, status: str) -> bool:
        completed_at, completed_at_epoch = now_stamp()
        # Only an active session may transition
        count = await self._update(
            """
            UPDATE sessions
            SET status = ?, completed_at = ?, completed_at_epoch = ?
            WHERE id = ? AND status = 'active'
            """,
            (status, completed_at, completed_at_epoch, session_id),
        )
        return count > 0

    async def complete_session(self, session_id: int) -> bool:
        return await self._finish_session(session_id, "completed")

    async def fail_session(self, session_id: int) -> bool:
        return await self._finish_session(session_id, "failed")

    async def get_active_sessions(self) -> List[Session]:
        rows = await self.fetchall(
            "SELECT * FROM sessions WHERE status = 'active' ORDER BY started_at_epoch DESC, id DESC"
        )
        return [self._row_to_session(row) for row in rows]

    async def get_sessions_by_project(self, project: str, limit: int = 100) -> List[Session]:
        rows = await self.fetchall(
            "SELECT * FROM sessions WHERE project = ? ORDER BY started_at_epoch DESC, id DESC LIMIT ?",
            (project, limit),
        )
        return [self._row_to_session(row) for row in rows]

    # =========================================================================
    # Project aliases
    # =========================================================================

    async def upsert_project_alias(self, project_name: str, display_name: str) -> None:
        now, _ = now_stamp()
        await self._update(
            """
            INSERT INTO project_aliases (project_name, display_name, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_name) DO UPDATE SET
                display_name = excluded.display_name,
                updated_at = excluded.updated_at
            """,
            (project_name, display_name, now, now),
        )

    async def get_project_aliases(self) -> List[ProjectAlias]:
        rows = await self.fetchall("SELECT * FROM project_aliases ORDER BY project_name")
        return [
            ProjectAlias(
                id=row["id"],
                project_name=row["project_name"],
                display_name=row["display_name"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    async def list_project_aliases(self) -> Dict[str, str]:
        return {alias.project_name: alias.display_name for alias in await self.get_project_aliases()}

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _row_to_observation(self, row: sqlite3.Row) -> Observation:
        keys = row.keys()
        return Observation(
            id=row["id"],
            memory_session_id=row["memory_session_id"],
            project=row["project"],
            type=row["type"],
            title=row["title"],
            subtitle=row["subtitle"],
            text=row["text"],
            narrative=row["narrative"],
            facts=row["facts"],
            concepts=row["concepts"],
            files_read=row["files_read"],
            files_modified=row["files_modified"],
            prompt_number=row["prompt_number"] or 0,
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
            last_accessed_epoch=row["last_accessed_epoch"] if "last_accessed_epoch" in keys else None,
            is_stale=bool(row["is_stale"]) if "is_stale" in keys else False,
        )

    def _row_to_summary(self, row: sqlite3.Row) -> Summary:
        return Summary(
            id=row["id"],
            session_id=row["session_id"],
            project=row["project"],
            request=row["request"],
            investigated=row["investigated"],
            learned=row["learned"],
            completed=row["completed"],
            next_steps=row["next_steps"],
            notes=row["notes"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )

    def _row_to_prompt(self, row: sqlite3.Row) -> UserPrompt:
        return UserPrompt(
            id=row["id"],
            content_session_id=row["content_session_id"],
            project=row["project"],
            prompt_number=row["prompt_number"],
            prompt_text=row["prompt_text"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            content_session_id=row["content_session_id"],
            project=row["project"],
            user_prompt=row["user_prompt"],
            memory_session_id=row["memory_session_id"],
            status=row["status"] or "active",
            started_at=row["started_at"],
            started_at_epoch=row["started_at_epoch"],
            completed_at=row["completed_at"],
            completed_at_epoch=row["completed_at_epoch"],
        )
