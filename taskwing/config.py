"""Configuration for TaskWing.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with TASKWING_ prefix.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from taskwing.log_config import get_logger

log = get_logger("config")

# Load .env file if present
try:
    from dotenv import load_dotenv

    _env_loaded = load_dotenv(Path.cwd() / ".env")
    log.debug(f"Loaded .env file: {_env_loaded}")
except ImportError:
    log.debug("python-dotenv not installed, using environment variables directly")


def _get_env(key: str, default: str) -> str:
    """Get environment variable with TASKWING_ prefix."""
    return os.getenv(f"TASKWING_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"TASKWING_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _get_env_int(key: str, default: int) -> int:
    val = os.getenv(f"TASKWING_{key}")
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        log.warning(f"Ignoring non-integer TASKWING_{key}={val!r}, using {default}")
        return default


def _get_env_float(key: str, default: float) -> float:
    val = os.getenv(f"TASKWING_{key}")
    if val is None or not val.strip():
        return default
    try:
        return float(val)
    except ValueError:
        log.warning(f"Ignoring non-numeric TASKWING_{key}={val!r}, using {default}")
        return default


@dataclass
class RetrievalConfig:
    """Tunables for the hybrid retrieval pipeline.

    Attributes:
        fts_weight: RRF weight of the keyword channel
        vector_weight: RRF weight of the semantic channel
        rrf_k: Reciprocal rank fusion constant
        candidate_floor: Minimum candidates fetched per channel
        rerank_top_k: Candidate pool multiplier base for the reranker (2 * limit when 0)
        semantic_link_threshold: Cosine above which ingest links two nodes as related
        ivf_threshold: Vector count above which the IVF index replaces brute force
        ivf_nprobe: Number of IVF lists probed per query
    """

    fts_weight: float = field(default_factory=lambda: _get_env_float("FTS_WEIGHT", 1.0))
    vector_weight: float = field(default_factory=lambda: _get_env_float("VECTOR_WEIGHT", 1.0))
    rrf_k: int = field(default_factory=lambda: _get_env_int("RRF_K", 60))
    candidate_floor: int = field(default_factory=lambda: _get_env_int("CANDIDATE_FLOOR", 20))
    rerank_top_k: int = field(default_factory=lambda: _get_env_int("RERANK_TOP_K", 0))
    semantic_link_threshold: float = field(
        default_factory=lambda: _get_env_float("SEMANTIC_LINK_THRESHOLD", 0.82)
    )
    ivf_threshold: int = field(default_factory=lambda: _get_env_int("IVF_THRESHOLD", 100_000))
    ivf_nprobe: int = field(default_factory=lambda: _get_env_int("IVF_NPROBE", 8))


@dataclass
class Config:
    """TaskWing configuration.

    Attributes:
        memory_dir: Per-workspace memory directory (default: ./.taskwing/memory)
        embedding_provider: litellm, local, tei or none
        embedding_model: LiteLLM model for embeddings
        local_model: sentence-transformers model for the local provider
        tei_base_url: Text-embeddings-inference server for the tei provider
        chat_model: LiteLLM model used for answers and the llm analyzer
        rerank_provider: none, tei or llm
        agent_workers: Analyzer pool size (default: CPU count)
        external_timeout: Per-call timeout for LLM/embedder/reranker, seconds
    """

    memory_dir: Path = field(
        default_factory=lambda: Path(_get_env("MEMORY_DIR", str(Path.cwd() / ".taskwing" / "memory")))
    )
    embedding_provider: str = field(default_factory=lambda: _get_env("EMBEDDING_PROVIDER", "litellm"))
    embedding_model: str = field(
        default_factory=lambda: _get_env("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    local_model: str = field(default_factory=lambda: _get_env("LOCAL_MODEL", "all-MiniLM-L6-v2"))
    tei_base_url: str = field(default_factory=lambda: _get_env("TEI_BASE_URL", "http://localhost:8080"))
    chat_model: str = field(default_factory=lambda: _get_env("CHAT_MODEL", "gpt-4o-mini"))
    use_llm_analyzer: bool = field(default_factory=lambda: _get_env_bool("USE_LLM_ANALYZER", False))
    rerank_provider: str = field(default_factory=lambda: _get_env("RERANK_PROVIDER", "none"))
    rerank_base_url: str = field(
        default_factory=lambda: _get_env("RERANK_BASE_URL", "http://localhost:8081")
    )
    rerank_model: str = field(
        default_factory=lambda: _get_env("RERANK_MODEL", "BAAI/bge-reranker-base")
    )
    agent_workers: int = field(default_factory=lambda: _get_env_int("AGENT_WORKERS", os.cpu_count() or 4))
    external_timeout: float = field(default_factory=lambda: _get_env_float("EXTERNAL_TIMEOUT", 30.0))
    max_retries: int = field(default_factory=lambda: _get_env_int("MAX_RETRIES", 3))
    max_concurrent_requests: int = field(
        default_factory=lambda: _get_env_int("MAX_CONCURRENT_REQUESTS", 4)
    )
    stream_buffer_size: int = field(default_factory=lambda: _get_env_int("STREAM_BUFFER_SIZE", 1000))
    symbol_gc_grace_seconds: int = field(
        default_factory=lambda: _get_env_int("SYMBOL_GC_GRACE_SECONDS", 7 * 24 * 3600)
    )
    hook_max_tasks: int = field(default_factory=lambda: _get_env_int("HOOK_MAX_TASKS", 5))
    hook_max_minutes: int = field(default_factory=lambda: _get_env_int("HOOK_MAX_MINUTES", 30))
    answer_char_budget: int = field(default_factory=lambda: _get_env_int("ANSWER_CHAR_BUDGET", 12000))
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def __post_init__(self):
        """Ensure paths are Path objects."""
        if isinstance(self.memory_dir, str):
            self.memory_dir = Path(self.memory_dir)
        if self.agent_workers < 1:
            self.agent_workers = 1

        log.debug(f"memory_dir={self.memory_dir}")
        log.debug(f"embedding_provider={self.embedding_provider}, model={self.embedding_model}")
        log.debug(f"rerank_provider={self.rerank_provider}, chat_model={self.chat_model}")
        log.debug(f"agent_workers={self.agent_workers}, external_timeout={self.external_timeout}")

    def ensure_dirs(self) -> None:
        """Create the memory and log directories if missing."""
        self.memory_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        """SQLite database holding every entity, the FTS index and vectors."""
        return self.memory_dir / "memory.db"

    @property
    def hook_session_path(self) -> Path:
        return self.memory_dir / "hook_session.json"

    @property
    def logs_dir(self) -> Path:
        return self.memory_dir / "logs"

    @property
    def trace_path(self) -> Path:
        return self.logs_dir / "bootstrap.trace.jsonl"

    @property
    def report_path(self) -> Path:
        return self.memory_dir / "last-bootstrap-report.json"
