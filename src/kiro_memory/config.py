import json
import os
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from pydantic import BaseModel, Field, ConfigDict

from .exceptions import ConfigurationError


class StorageConfig(BaseModel):
    data_dir: str = "~/.kiro-memory"
    sqlite_path: Optional[str] = None


class EmbeddingConfig(BaseModel):
    # First loadable provider wins for the process lifetime
    providers: list[str] = Field(default_factory=lambda: ["fastembed", "sentence-transformers"])
    fastembed_model: str = "BAAI/bge-small-en-v1.5"
    sentence_transformers_model: str = "all-MiniLM-L6-v2"
    max_input_chars: int = 2000
    dimensions: int = 384


class SearchConfig(BaseModel):
    semantic_weight: float = 0.4
    fts_weight: float = 0.3
    recency_weight: float = 0.2
    project_weight: float = 0.1
    context_recency_weight: float = 0.7
    context_project_weight: float = 0.3
    recency_half_life_hours: float = 168.0
    access_half_life_hours: float = 48.0
    vector_threshold: float = 0.3
    hybrid_boost: float = 1.15
    stale_penalty: float = 0.5
    default_limit: int = 10
    max_limit: int = 100


class ContextConfig(BaseModel):
    observation_count: int = 20
    summary_count: int = 5
    prompt_count: int = 10


class MaintenanceConfig(BaseModel):
    min_group_size: int = 3
    max_merged_chars: int = 100_000
    merge_delimiter: str = "\n---\n"
    backfill_batch_size: int = 50


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3001
    worker_token: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = False
    log_file: Optional[str] = None


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embeddings: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _config_path() -> Path:
    env_path = os.environ.get("KIRO_MEMORY_CONFIG")
    if env_path:
        return Path(env_path).expanduser()

    config_root = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return config_root / "kiro-memory" / "config.json"


def load_config() -> AppConfig:
    path = _config_path()
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        config = AppConfig.model_validate(data)
        return _apply_env_overrides(config)

    return _apply_env_overrides(AppConfig())


def save_config(config: AppConfig) -> None:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(config.model_dump(), handle, indent=2)


def update_config(patch: Dict[str, Any]) -> AppConfig:
    config = load_config()
    merged = config.model_dump()
    for key, value in patch.items():
        if isinstance(value, dict) and key in merged:
            merged[key].update(value)
        else:
            merged[key] = value
    updated = AppConfig.model_validate(merged)
    save_config(updated)
    return updated


def resolve_storage_paths(config: AppConfig) -> StorageConfig:
    storage = config.storage.model_copy(deep=True)
    data_dir = Path(storage.data_dir).expanduser()
    storage.data_dir = str(data_dir)
    if not storage.sqlite_path:
        storage.sqlite_path = str(data_dir / "kiro-memory.db")
    return storage


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _env_bool(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    value = value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return None


def _env_list(name: str) -> Optional[list[str]]:
    value = os.environ.get(name)
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    data_dir = os.environ.get("KIRO_MEMORY_DATA_DIR")
    sqlite_path = os.environ.get("KIRO_MEMORY_DB_PATH")
    if data_dir:
        config.storage.data_dir = data_dir
    if sqlite_path:
        config.storage.sqlite_path = sqlite_path

    providers = _env_list("KIRO_MEMORY_EMBEDDING_PROVIDERS")
    fastembed_model = os.environ.get("KIRO_MEMORY_FASTEMBED_MODEL")
    st_model = os.environ.get("KIRO_MEMORY_SENTENCE_TRANSFORMERS_MODEL")
    if providers is not None:
        config.embeddings.providers = providers
    if fastembed_model:
        config.embeddings.fastembed_model = fastembed_model
    if st_model:
        config.embeddings.sentence_transformers_model = st_model

    recency_half_life = _env_float("KIRO_MEMORY_RECENCY_HALFLIFE_HOURS")
    vector_threshold = _env_float("KIRO_MEMORY_VECTOR_THRESHOLD")
    hybrid_boost = _env_float("KIRO_MEMORY_HYBRID_BOOST")
    if recency_half_life is not None:
        config.search.recency_half_life_hours = recency_half_life
    if vector_threshold is not None:
        config.search.vector_threshold = vector_threshold
    if hybrid_boost is not None:
        config.search.hybrid_boost = hybrid_boost

    context_observations = _env_int("KIRO_MEMORY_CONTEXT_OBSERVATIONS")
    context_summaries = _env_int("KIRO_MEMORY_CONTEXT_SUMMARIES")
    if context_observations is not None:
        config.context.observation_count = context_observations
    if context_summaries is not None:
        config.context.summary_count = context_summaries

    min_group_size = _env_int("KIRO_MEMORY_MIN_GROUP_SIZE")
    batch_size = _env_int("KIRO_MEMORY_BACKFILL_BATCH_SIZE")
    if min_group_size is not None:
        config.maintenance.min_group_size = min_group_size
    if batch_size is not None:
        config.maintenance.backfill_batch_size = batch_size

    host = os.environ.get("KIRO_MEMORY_WORKER_HOST")
    port = _env_int("KIRO_MEMORY_WORKER_PORT")
    token = os.environ.get("KIRO_MEMORY_WORKER_TOKEN")
    if host:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if token:
        config.server.worker_token = token

    log_level = os.environ.get("KIRO_MEMORY_LOG_LEVEL")
    log_json = _env_bool("KIRO_MEMORY_LOG_JSON")
    if log_level:
        config.logging.level = log_level
    if log_json is not None:
        config.logging.json_format = log_json

    return config


# =============================================================================
# Configuration Validation
# =============================================================================

_KNOWN_EMBEDDING_PROVIDERS = {"fastembed", "sentence-transformers", "none"}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_config(config: AppConfig, strict: bool = False) -> Tuple[bool, List[str]]:
    """Validate configuration settings.

    Args:
        config: The configuration to validate
        strict: If True, treat warnings as errors

    Returns:
        Tuple of (is_valid, list of warning messages)

    Raises:
        ConfigurationError: If any setting is invalid
    """
    warnings: List[str] = []
    errors: List[str] = []

    _validate_embedding_config(config.embeddings, errors, warnings)
    _validate_search_config(config.search, errors, warnings)
    _validate_storage_config(config.storage, errors, warnings)
    _validate_context_config(config.context, errors, warnings)
    _validate_maintenance_config(config.maintenance, errors, warnings)
    _validate_server_config(config.server, errors, warnings)

    if config.logging.level.upper() not in _VALID_LOG_LEVELS:
        warnings.append(f"Unknown log level '{config.logging.level}', falling back to INFO")

    if strict:
        errors.extend(warnings)
        warnings = []

    if errors:
        raise ConfigurationError(
            f"Configuration validation failed with {len(errors)} error(s): {'; '.join(errors)}",
            {"errors": errors, "warnings": warnings}
        )

    return len(errors) == 0, warnings


def _validate_embedding_config(embeddings: EmbeddingConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate embedding configuration."""
    for provider in embeddings.providers:
        if provider.lower() not in _KNOWN_EMBEDDING_PROVIDERS:
            warnings.append(
                f"Unknown embedding provider '{provider}', valid options: {sorted(_KNOWN_EMBEDDING_PROVIDERS)}"
            )
    if not embeddings.providers:
        warnings.append("No embedding providers configured, hybrid search will be keyword-only")
    if embeddings.max_input_chars <= 0:
        errors.append(f"max_input_chars must be positive, got {embeddings.max_input_chars}")
    if embeddings.dimensions <= 0:
        errors.append(f"dimensions must be positive, got {embeddings.dimensions}")


def _validate_search_config(search: SearchConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate search configuration."""
    weights = {
        "semantic_weight": search.semantic_weight,
        "fts_weight": search.fts_weight,
        "recency_weight": search.recency_weight,
        "project_weight": search.project_weight,
        "context_recency_weight": search.context_recency_weight,
        "context_project_weight": search.context_project_weight,
    }
    for name, value in weights.items():
        if value < 0:
            errors.append(f"{name} must be non-negative, got {value}")

    total = search.semantic_weight + search.fts_weight + search.recency_weight + search.project_weight
    if total == 0:
        errors.append("At least one search weight must be positive")
    elif abs(total - 1.0) > 1e-6:
        warnings.append(f"Search weights sum to {total:.3f}, scores may exceed [0, 1]")

    if search.recency_half_life_hours <= 0:
        errors.append(f"recency_half_life_hours must be positive, got {search.recency_half_life_hours}")
    if search.access_half_life_hours <= 0:
        errors.append(f"access_half_life_hours must be positive, got {search.access_half_life_hours}")
    if not 0 <= search.vector_threshold <= 1:
        errors.append(f"vector_threshold must be within [0, 1], got {search.vector_threshold}")
    if search.hybrid_boost < 1:
        warnings.append(f"hybrid_boost below 1 ({search.hybrid_boost}) penalises hybrid matches")
    if not 0 < search.stale_penalty <= 1:
        errors.append(f"stale_penalty must be within (0, 1], got {search.stale_penalty}")
    if search.default_limit <= 0 or search.default_limit > search.max_limit:
        errors.append(
            f"default_limit ({search.default_limit}) must be positive and at most max_limit ({search.max_limit})"
        )


def _validate_storage_config(storage: StorageConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate storage configuration."""
    try:
        data_path = Path(storage.data_dir).expanduser()
        if data_path.exists() and not data_path.is_dir():
            errors.append(f"data_dir '{storage.data_dir}' exists but is not a directory")
    except Exception as e:
        errors.append(f"Invalid data_dir path '{storage.data_dir}': {e}")


def _validate_context_config(context: ContextConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate context configuration."""
    if context.observation_count <= 0:
        errors.append(f"observation_count must be positive, got {context.observation_count}")
    if context.summary_count < 0:
        errors.append(f"summary_count must be non-negative, got {context.summary_count}")
    if context.prompt_count < 0:
        errors.append(f"prompt_count must be non-negative, got {context.prompt_count}")


def _validate_maintenance_config(maintenance: MaintenanceConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate maintenance configuration."""
    if maintenance.min_group_size < 2:
        errors.append(f"min_group_size must be at least 2, got {maintenance.min_group_size}")
    if maintenance.max_merged_chars <= 0:
        errors.append(f"max_merged_chars must be positive, got {maintenance.max_merged_chars}")
    if not 1 <= maintenance.backfill_batch_size <= 500:
        errors.append(f"backfill_batch_size must be within [1, 500], got {maintenance.backfill_batch_size}")


def _validate_server_config(server: ServerConfig, errors: List[str], warnings: List[str]) -> None:
    """Validate server configuration."""
    if not 0 < server.port < 65536:
        errors.append(f"port must be within 1-65535, got {server.port}")
    if not server.worker_token:
        warnings.append("worker_token is not set, the worker will generate one in data_dir/worker.token")


def load_and_validate_config(strict: bool = False) -> Tuple[AppConfig, List[str]]:
    """Load and validate configuration.

    Args:
        strict: If True, treat warnings as errors

    Returns:
        Tuple of (validated config, list of warnings)

    Raises:
        ConfigurationError: If validation fails
    """
    config = load_config()
    is_valid, warnings = validate_config(config, strict=strict)
    return config, warnings
