"""Logging configuration for TaskWing.

Uses loguru. Every module binds its own name with ``get_logger(name)``; the
name's first segment selects the component level override.

Sinks:
- stderr, colored, filtered by level (stdout belongs to the hook protocol)
- TASKWING_LOG_DIR/taskwing_<date>.log at DEBUG (10 MB rotation, 7 days, zip)
- TASKWING_LOG_DIR/latest.log at TRACE for the most recent run

Environment variables:
- TASKWING_LOG_LEVEL: global level (default: INFO)
- TASKWING_LOG_DB: db.*
- TASKWING_LOG_EMBEDDINGS: embeddings, reranker, llm, retry
- TASKWING_LOG_AGENTS: agents.*, bootstrap, workspace
- TASKWING_LOG_PLANNING: planning.*, hooks
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from time import perf_counter

from loguru import logger

COMPONENTS: dict[str, tuple[str, ...]] = {
    "db": ("db",),
    "embeddings": ("embeddings", "reranker", "llm", "retry"),
    "agents": ("agents", "bootstrap", "workspace"),
    "planning": ("planning", "hooks"),
}

_levels: dict[str, str] = {"global": os.getenv("TASKWING_LOG_LEVEL", "INFO").upper()}
for _component in COMPONENTS:
    _override = os.getenv(f"TASKWING_LOG_{_component.upper()}", "").upper()
    if _override:
        _levels[_component] = _override


def _component_of(name: str) -> str | None:
    head = name.split(".", 1)[0]
    for component, prefixes in COMPONENTS.items():
        if head in prefixes:
            return component
    return None


def _level_no(level: str) -> int | None:
    try:
        return logger.level(level).no
    except ValueError:
        return None


def _stderr_filter(record) -> bool:
    component = _component_of(record["extra"].get("name", ""))
    threshold = _level_no(_levels.get(component, "")) if component else None
    if threshold is None:
        threshold = _level_no(_levels["global"])
    return threshold is None or record["level"].no >= threshold


def set_log_level(level: str, component: str | None = None) -> None:
    """Change the stderr threshold at runtime (globally or for one component)."""
    key = component or "global"
    if component is not None and component not in COMPONENTS:
        raise ValueError(f"Unknown log component '{component}'")
    _levels[key] = level.upper()


_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

logger.remove()
logger.configure(extra={"name": "taskwing"})

logger.add(
    sys.stderr,
    level=0,
    filter=_stderr_filter,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> - <level>{message}</level>",
    colorize=True,
)

log_dir = Path(os.getenv("TASKWING_LOG_DIR", str(Path.home() / ".taskwing" / "logs")))
try:
    log_dir.mkdir(parents=True, exist_ok=True)
except OSError as e:
    logger.warning(f"File logging disabled, cannot create {log_dir}: {e}")
else:
    logger.add(
        log_dir / "taskwing_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format=_FILE_FORMAT,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
    )
    logger.add(log_dir / "latest.log", level="TRACE", format=_FILE_FORMAT, rotation="5 MB", retention=1)


def get_logger(name: str):
    """Logger with ``name`` bound; use dotted names like ``db.fts``."""
    return logger.bind(name=name)


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Log how long the block took.

    Yields a dict whose ``elapsed_ms`` is filled in when the block exits:

        with log_timing("FTS query", log) as timing:
            hits = fts.search(query)
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["COMPONENTS", "logger", "get_logger", "log_timing", "set_log_level"]
