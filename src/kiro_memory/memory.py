import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .config import AppConfig, load_config, resolve_storage_paths
from .db import DatabaseManager, now_stamp
from .embeddings.service import EmbeddingService
from .exceptions import ValidationError
from .logging_config import get_logger, log_async_duration
from .models import (
    ConsolidationReport,
    EmbeddingStats,
    HybridResult,
    Observation,
    ProjectStats,
    SearchFilters,
    Session,
    StalenessReport,
    Summary,
    TimelineEntry,
    UserPrompt,
    VectorHit,
    join_list_field,
)
from .services import ConsolidationService, HybridSearchService, StalenessService
from .validation import (
    clamp_int,
    validate_ids,
    validate_project,
    validate_string_list,
    validate_summary_field,
    validate_text,
    validate_title,
)
from .vector_store import VectorStore

logger = get_logger("memory")

NOTIFY_EVENTS = ("observation-created", "summary-created", "prompt-created", "session-created")

Listener = Callable[[str, Dict[str, Any]], None]


class MemoryManager:
    """Entry point composing the store, embeddings, search and maintenance.

    Usage:
        manager = MemoryManager(config)
        await manager.initialize()
        obs_id = await manager.create_observation("acme", "file-write", "Fixed X", content="...")
        results = await manager.hybrid_search("Fixed", project="acme")
        await manager.close()
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        db: Optional[DatabaseManager] = None,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self.config = config or load_config()
        storage = resolve_storage_paths(self.config)
        self.db = db or DatabaseManager(storage.sqlite_path)
        self.embedding_service = embedding_service or EmbeddingService(self.config)
        self.vector_store = VectorStore(self.db, self.embedding_service, self.config)
        self.search_service = HybridSearchService(
            self.db, self.vector_store, self.embedding_service, self.config
        )
        self.consolidation_service = ConsolidationService(self.db, self.config)
        self.staleness_service = StalenessService(self.db, self.config)
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._listener_lock = threading.Lock()
        self._initialized = False

    async def initialize(self, skip_migrations: bool = False) -> None:
        if self._initialized:
            return
        await self.db.connect(skip_migrations=skip_migrations)
        self._initialized = True

    async def wait_for_background(self) -> None:
        """Wait for pending embedding and access-time tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.search_service.drain()

    async def close(self) -> None:
        """Wait for background work, then close the store."""
        await self.wait_for_background()
        await self.db.close()
        self._initialized = False

    async def __aenter__(self) -> "MemoryManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Events
    # =========================================================================

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._listener_lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._listener_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def publish_event(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        if event not in NOTIFY_EVENTS:
            raise ValidationError("event", f"Event must be one of: {', '.join(NOTIFY_EVENTS)}", value=event)
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, data or {})
            except Exception as e:
                logger.warning(f"Event listener failed for {event}: {e}")

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_observation(
        self,
        project: str,
        obs_type: str,
        title: str,
        content: Optional[str] = None,
        concepts: Optional[List[str]] = None,
        files: Optional[List[str]] = None,
        memory_session_id: Optional[str] = None,
        subtitle: Optional[str] = None,
        narrative: Optional[str] = None,
        facts: Optional[str] = None,
        files_read: Optional[List[str]] = None,
        prompt_number: int = 0,
        created_at_epoch: Optional[int] = None,
    ) -> int:
        """Record one observation and embed it in the background.

        Args:
            project: Project the observation belongs to
            obs_type: Observation type (file-write, command, manual, ...)
            title: Short title
            content: Free-text body
            concepts: Concept tags
            files: Files modified; also used as files read unless given
            memory_session_id: Owning session, generated when omitted
            subtitle: Optional subtitle
            narrative: Optional narrative
            facts: Optional facts
            files_read: Files read, when different from ``files``
            prompt_number: Position within the session
            created_at_epoch: Creation time in epoch ms, defaults to now

        Returns:
            The new observation id
        """
        project = validate_project(project)
        title = validate_title(title)
        content = validate_text(content, "content")
        narrative = validate_text(narrative, "narrative")
        concepts = validate_string_list(concepts, "concepts")
        files = validate_string_list(files, "files")
        files_read = validate_string_list(files_read, "files_read")
        if not obs_type or not isinstance(obs_type, str):
            obs_type = "manual"
        if not memory_session_id:
            memory_session_id = f"api-{now_stamp()[1]}"

        concepts_text = join_list_field(concepts)
        files_text = join_list_field(files)
        obs_id = await self.db.add_observation(
            memory_session_id=memory_session_id,
            project=project,
            obs_type=obs_type,
            title=title,
            subtitle=subtitle,
            text=content,
            narrative=narrative,
            facts=facts,
            concepts=concepts_text,
            files_read=join_list_field(files_read) if files_read is not None else files_text,
            files_modified=files_text,
            prompt_number=prompt_number,
            created_at_epoch=created_at_epoch,
        )
        self._schedule_embedding(obs_id, title, content, narrative, concepts_text)
        self.publish_event("observation-created", {"id": obs_id, "project": project, "title": title})
        return obs_id

    def _schedule_embedding(
        self,
        obs_id: int,
        title: str,
        content: Optional[str],
        narrative: Optional[str],
        concepts: Optional[str],
    ) -> None:
        task = asyncio.create_task(self._embed_in_background(obs_id, title, content, narrative, concepts))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _embed_in_background(
        self,
        obs_id: int,
        title: str,
        content: Optional[str],
        narrative: Optional[str],
        concepts: Optional[str],
    ) -> None:
        try:
            await self.vector_store.embed_observation(obs_id, title, content, narrative, concepts)
        except Exception as e:
            # The observation may have been removed before its embedding landed
            logger.debug(f"Embedding generation skipped for observation {obs_id}: {e}")

    async def create_summary(
        self,
        project: str,
        session_id: Optional[str] = None,
        request: Optional[str] = None,
        investigated: Optional[str] = None,
        learned: Optional[str] = None,
        completed: Optional[str] = None,
        next_steps: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        project = validate_project(project)
        fields = {
            "request": request,
            "investigated": investigated,
            "learned": learned,
            "completed": completed,
            "next_steps": next_steps,
            "notes": notes,
        }
        fields = {name: validate_summary_field(value, name) or None for name, value in fields.items()}
        summary_id = await self.db.add_summary(
            session_id=session_id or f"api-{now_stamp()[1]}",
            project=project,
            **fields,
        )
        self.publish_event("summary-created", {"id": summary_id, "project": project})
        return summary_id

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
    ) -> Dict[str, List[Any]]:
        """Keyword search over observations and summaries."""
        filters = filters or SearchFilters()
        if filters.project:
            validate_project(filters.project)
        if not query or not query.strip():
            return {"observations": [], "summaries": []}
        hits = await self.db.search_observations_fts(query, filters)
        summaries = await self.db.search_summaries(query, filters)
        return {
            "observations": [hit.observation for hit in hits],
            "summaries": summaries,
        }

    async def semantic_search(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[VectorHit]:
        """Vector-only search; empty when no embedding provider is available."""
        limit = clamp_int(limit, self.config.search.default_limit, 1, self.config.search.max_limit)
        vector = await self.embedding_service.embed(query)
        if vector is None:
            return []
        return await self.vector_store.search(vector, project=project, limit=limit)

    @log_async_duration("hybrid search")
    async def hybrid_search(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
        obs_type: Optional[str] = None,
    ) -> List[HybridResult]:
        if project:
            validate_project(project)
        limit = clamp_int(limit, self.config.search.default_limit, 1, self.config.search.max_limit)
        return await self.search_service.search(query, project=project, limit=limit, obs_type=obs_type)

    async def get_context(self, project: str) -> Dict[str, Any]:
        """Recent observations, summaries and prompts for ambient injection."""
        project = validate_project(project)
        context = self.config.context
        observations = await self.db.get_observations_by_project(project, context.observation_count)
        order = {r.id: i for i, r in enumerate(self.search_service.rank_for_context(observations, project))}
        observations.sort(key=lambda o: order[o.id])
        return {
            "project": project,
            "observations": observations,
            "summaries": await self.db.get_summaries_by_project(project, context.summary_count),
            "prompts": await self.db.get_prompts_by_project(project, context.prompt_count),
        }

    async def get_observation(self, obs_id: int) -> Optional[Observation]:
        return await self.db.get_observation(obs_id)

    async def get_by_ids(self, ids: List[int]) -> List[Observation]:
        """Fetch observations by id; unknown ids are ignored."""
        return await self.db.get_observations_by_ids(validate_ids(ids))

    async def timeline(
        self,
        anchor_id: int,
        depth_before: int = 5,
        depth_after: int = 5,
    ) -> List[TimelineEntry]:
        return await self.db.get_timeline(anchor_id, depth_before, depth_after)

    async def project_stats(self, project: str) -> ProjectStats:
        return await self.db.get_project_stats(validate_project(project))

    async def list_projects(self) -> List[str]:
        return await self.db.list_projects()

    async def list_observations(
        self, offset: int = 0, limit: int = 50, project: Optional[str] = None
    ) -> Tuple[List[Observation], int]:
        items = await self.db.list_observations(offset, limit, project)
        return items, await self.db.count_rows("observations", project)

    async def list_summaries(
        self, offset: int = 0, limit: int = 20, project: Optional[str] = None
    ) -> Tuple[List[Summary], int]:
        items = await self.db.list_summaries(offset, limit, project)
        return items, await self.db.count_rows("summaries", project)

    async def list_prompts(
        self, offset: int = 0, limit: int = 20, project: Optional[str] = None
    ) -> Tuple[List[UserPrompt], int]:
        items = await self.db.list_prompts(offset, limit, project)
        return items, await self.db.count_rows("prompts", project)

    # =========================================================================
    # Sessions and prompts
    # =========================================================================

    async def start_session(self, content_session_id: str, project: str, user_prompt: str = "") -> Session:
        """Return the session for a host conversation, creating it on first use."""
        project = validate_project(project)
        existing = await self.db.get_session_by_content_id(content_session_id)
        if existing:
            return existing
        session_id = await self.db.add_session(content_session_id, project, user_prompt)
        self.publish_event("session-created", {"id": session_id, "project": project})
        return await self.db.get_session(session_id)

    async def get_session(self, content_session_id: str) -> Optional[Session]:
        return await self.db.get_session_by_content_id(content_session_id)

    async def set_memory_session_id(self, session_id: int, memory_session_id: str) -> bool:
        return await self.db.update_memory_session_id(session_id, memory_session_id) > 0

    async def complete_session(self, session_id: int) -> bool:
        return await self.db.complete_session(session_id)

    async def fail_session(self, session_id: int) -> bool:
        return await self.db.fail_session(session_id)

    async def get_active_sessions(self) -> List[Session]:
        return await self.db.get_active_sessions()

    async def list_sessions(self, project: str, limit: int = 100) -> List[Session]:
        return await self.db.get_sessions_by_project(validate_project(project), limit)

    async def record_prompt(
        self,
        content_session_id: str,
        project: str,
        prompt_text: str,
        prompt_number: Optional[int] = None,
    ) -> int:
        """Store a user prompt; numbering continues from the session's last prompt."""
        project = validate_project(project)
        prompt_text = validate_text(prompt_text, "prompt_text") or ""
        if prompt_number is None:
            latest = await self.db.get_latest_prompt(content_session_id)
            prompt_number = latest.prompt_number + 1 if latest else 1
        prompt_id = await self.db.add_prompt(content_session_id, project, prompt_number, prompt_text)
        self.publish_event("prompt-created", {"id": prompt_id, "project": project})
        return prompt_id

    async def get_prompts(self, content_session_id: str) -> List[UserPrompt]:
        return await self.db.get_prompts_by_session(content_session_id)

    # =========================================================================
    # Project aliases
    # =========================================================================

    async def set_project_alias(self, project: str, display_name: str) -> str:
        project = validate_project(project)
        if not isinstance(display_name, str) or not display_name.strip():
            raise ValidationError("displayName", 'Field "displayName" (string) is required')
        display_name = display_name.strip()
        await self.db.upsert_project_alias(project, display_name)
        return display_name

    async def list_project_aliases(self) -> Dict[str, str]:
        return await self.db.list_project_aliases()

    # =========================================================================
    # Embeddings and maintenance
    # =========================================================================

    async def backfill_embeddings(self, batch_size: Optional[int] = None) -> int:
        batch_size = clamp_int(batch_size, self.config.maintenance.backfill_batch_size, 1, 500)
        return await self.vector_store.backfill_embeddings(batch_size)

    async def embedding_stats(self) -> EmbeddingStats:
        await self.embedding_service.initialize()
        return await self.vector_store.get_stats()

    async def consolidate(
        self,
        project: Optional[str] = None,
        min_group_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> ConsolidationReport:
        if project:
            validate_project(project)
        if min_group_size is not None and min_group_size < 2:
            raise ValidationError("min_group_size", "min_group_size must be at least 2", value=str(min_group_size))
        report = await self.consolidation_service.consolidate(project, min_group_size, dry_run)
        if not dry_run:
            for group in report.groups:
                keeper = await self.db.get_observation(group["keeper_id"])
                if keeper and not await self.vector_store.has_embedding(keeper.id):
                    self._schedule_embedding(keeper.id, keeper.title, keeper.text, keeper.narrative, keeper.concepts)
        return report

    async def detect_stale(
        self,
        project: Optional[str] = None,
        base_dir: Optional[str] = None,
        reset: bool = False,
    ) -> StalenessReport:
        if project:
            validate_project(project)
        return await self.staleness_service.detect(project, base_dir, reset)
