"""Exception hierarchy for TaskWing.

Every application error inherits from TaskWingError, which carries a stable
``kind`` tag and an optional actionable hint. The CLI renders errors either
as a one-line message plus hint or as the JSON envelope
``{"ok": false, "kind": ..., "message": ..., "hint": ...}``.
"""

from typing import Any

KIND_VALIDATION = "validation"
KIND_NOT_FOUND = "not_found"
KIND_CONFLICT = "conflict"
KIND_STORAGE = "storage"
KIND_EXTERNAL = "external"
KIND_CANCELLED = "cancelled"


class TaskWingError(Exception):
    """Base exception for all TaskWing errors."""

    kind = "internal"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_envelope(self) -> dict[str, Any]:
        """Structured error envelope for --json callers."""
        envelope: dict[str, Any] = {"ok": False, "kind": self.kind, "message": self.message}
        if self.hint:
            envelope["hint"] = self.hint
        return envelope


class ValidationError(TaskWingError):
    """Invalid input: missing field, empty name, bad transition, cycle."""

    kind = KIND_VALIDATION


class InvalidTransitionError(ValidationError):
    """A status change not allowed by the entity's state machine."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


class CycleError(ValidationError):
    """Adding an edge would close a dependency cycle.

    ``path`` lists the node ids of the cycle, starting and ending at the same node.
    """

    def __init__(self, path: list[str]) -> None:
        super().__init__(
            f"Dependency cycle would result: {' -> '.join(path)}",
            hint="Remove one of the dependencies on the path before adding this one.",
        )
        self.path = path


class NotFoundError(TaskWingError):
    kind = KIND_NOT_FOUND

    def __init__(self, entity: str, key: str, *, hint: str | None = None) -> None:
        super().__init__(f"{entity} not found: {key}", hint=hint)
        self.entity = entity
        self.key = key


class ConflictError(TaskWingError):
    """Uniqueness violation (duplicate feature name) or blocked delete."""

    kind = KIND_CONFLICT


class StorageError(TaskWingError):
    kind = KIND_STORAGE


class StorageFullError(StorageError):
    def __init__(self, message: str = "Disk full while writing memory database") -> None:
        super().__init__(message, hint="Free disk space and retry; no partial write was applied.")


class StorageCorruptError(StorageError):
    def __init__(self, path: str, detail: str) -> None:
        super().__init__(
            f"Memory database at {path} is corrupted: {detail}",
            hint=f"Move {path} aside and run bootstrap again to rebuild it.",
        )
        self.path = path


class SchemaMismatchError(StorageError):
    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"Memory database schema version {found} is newer than supported version {supported}",
            hint="Upgrade taskwing to a version that understands this database.",
        )
        self.found = found
        self.supported = supported


class ExternalServiceError(TaskWingError):
    """LLM, embedder or reranker failure after retries were exhausted."""

    kind = KIND_EXTERNAL

    def __init__(self, service: str, message: str, *, transient: bool = False) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.transient = transient


class CancelledError(TaskWingError):
    """User interrupt or deadline exceeded."""

    kind = KIND_CANCELLED

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)
