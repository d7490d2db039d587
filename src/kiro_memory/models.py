from pydantic import BaseModel, Field
from typing import List, Optional, Literal, Dict


SessionStatus = Literal["active", "completed", "failed"]
ResultSource = Literal["vector", "keyword", "hybrid"]

# Common observation types recorded by the hooks; free-form strings are accepted too
OBSERVATION_TYPES = (
    "file-write",
    "file-read",
    "command",
    "research",
    "delegation",
    "tool-use",
    "manual",
)


def split_list_field(value: Optional[str]) -> List[str]:
    """Split a comma-separated column (concepts, files_read, files_modified)."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def join_list_field(values: Optional[List[str]]) -> Optional[str]:
    if not values:
        return None
    cleaned = [str(v).strip() for v in values if str(v).strip()]
    return ", ".join(cleaned) or None


class Observation(BaseModel):
    id: int
    memory_session_id: str
    project: str
    type: str
    title: str
    subtitle: Optional[str] = None
    text: Optional[str] = None
    narrative: Optional[str] = None
    facts: Optional[str] = None
    concepts: Optional[str] = None
    files_read: Optional[str] = None
    files_modified: Optional[str] = None
    prompt_number: int = 0
    created_at: str
    created_at_epoch: int
    last_accessed_epoch: Optional[int] = None
    is_stale: bool = False

    def modified_files(self) -> List[str]:
        return split_list_field(self.files_modified)

    def concept_list(self) -> List[str]:
        return split_list_field(self.concepts)


class Summary(BaseModel):
    id: int
    session_id: str
    project: str
    request: Optional[str] = None
    investigated: Optional[str] = None
    learned: Optional[str] = None
    completed: Optional[str] = None
    next_steps: Optional[str] = None
    notes: Optional[str] = None
    created_at: str
    created_at_epoch: int


class UserPrompt(BaseModel):
    id: int
    content_session_id: str
    project: str
    prompt_number: int
    prompt_text: str
    created_at: str
    created_at_epoch: int


class Session(BaseModel):
    id: int
    content_session_id: str
    project: str
    user_prompt: str
    memory_session_id: Optional[str] = None
    status: SessionStatus = "active"
    started_at: str
    started_at_epoch: int
    completed_at: Optional[str] = None
    completed_at_epoch: Optional[int] = None


class ProjectAlias(BaseModel):
    id: int
    project_name: str
    display_name: str
    created_at: str
    updated_at: str


class SearchFilters(BaseModel):
    project: Optional[str] = None
    type: Optional[str] = None
    date_start: Optional[int] = None
    date_end: Optional[int] = None
    limit: int = 20


class LexicalHit(BaseModel):
    """Full-text match with the raw engine rank (lower is more relevant)."""
    observation: Observation
    rank: float = 0.0


class VectorHit(BaseModel):
    observation_id: int
    similarity: float
    title: str
    text: Optional[str] = None
    narrative: Optional[str] = None
    type: str
    project: str
    created_at: str
    created_at_epoch: int
    is_stale: bool = False


class ScoreSignals(BaseModel):
    semantic: float = 0.0
    fts: float = 0.0
    recency: float = 0.0
    project_match: float = 0.0


class HybridResult(BaseModel):
    id: int
    title: str
    content: str = ""
    type: str
    project: str
    created_at: str
    created_at_epoch: int
    score: float
    source: ResultSource
    is_stale: bool = False
    signals: ScoreSignals = Field(default_factory=ScoreSignals)


class TimelineEntry(BaseModel):
    id: int
    type: Literal["observation"] = "observation"
    title: str
    content: Optional[str] = None
    project: str
    created_at: str
    created_at_epoch: int


class ProjectStats(BaseModel):
    observations: int = 0
    summaries: int = 0
    sessions: int = 0
    prompts: int = 0


class EmbeddingStats(BaseModel):
    total: int = 0
    embedded: int = 0
    percentage: int = 0
    provider: Optional[str] = None
    dimensions: int = 0
    available: bool = False


class ConsolidationReport(BaseModel):
    merged: int = 0
    removed: int = 0
    dry_run: bool = False
    groups: List[Dict[str, object]] = Field(default_factory=list)
    failed: int = 0


class StalenessReport(BaseModel):
    checked: int = 0
    marked_stale: int = 0
    missing_files: int = 0
    stale_ids: List[int] = Field(default_factory=list)
