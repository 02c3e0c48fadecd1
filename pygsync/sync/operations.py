"""Sync plan data structures: operations, plans and run summaries."""

from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class OperationKind(str, Enum):
    """Kinds of remote operations a sync plan can contain."""

    CREATE_FOLDER = "create_folder"
    """Create a remote folder for a new local directory"""

    UPLOAD_NEW = "upload_new"
    """Upload a local file that has no remote counterpart yet"""

    UPDATE_CONTENT = "update_content"
    """Replace the content of an existing remote file"""

    DELETE = "delete"
    """Delete a remote object whose local path no longer exists"""

    @property
    def is_delete(self) -> bool:
        return self is OperationKind.DELETE


@dataclass(frozen=True)
class Operation:
    """A single remote operation of a sync plan.

    Every operation carries what is needed to apply it on its own and to
    update exactly one state record afterwards. Which fields are set depends
    on ``kind``:

    ============== =========== =========== ==============
    kind           remote_id   fingerprint size / mtime
    ============== =========== =========== ==============
    CREATE_FOLDER  -           -           mtime
    UPLOAD_NEW     -           yes         yes
    UPDATE_CONTENT yes         yes         yes
    DELETE         yes         -           -
    ============== =========== =========== ==============
    """

    kind: OperationKind
    path: str
    """Relative local path the operation refers to"""

    remote_id: Optional[str] = None
    fingerprint: Optional[str] = None
    size: int = 0
    mtime: float = 0.0

    is_folder: bool = False
    """For DELETE: whether the remote object is a folder"""

    depends_on: tuple[int, ...] = ()
    """Plan indices of operations that must succeed before this one starts"""

    @classmethod
    def create_folder(cls, path: str, mtime: float = 0.0) -> "Operation":
        return cls(OperationKind.CREATE_FOLDER, path, mtime=mtime, is_folder=True)

    @classmethod
    def upload_new(
        cls, path: str, fingerprint: str, size: int = 0, mtime: float = 0.0
    ) -> "Operation":
        return cls(
            OperationKind.UPLOAD_NEW, path, fingerprint=fingerprint, size=size, mtime=mtime
        )

    @classmethod
    def update_content(
        cls,
        path: str,
        remote_id: str,
        fingerprint: str,
        size: int = 0,
        mtime: float = 0.0,
    ) -> "Operation":
        return cls(
            OperationKind.UPDATE_CONTENT,
            path,
            remote_id=remote_id,
            fingerprint=fingerprint,
            size=size,
            mtime=mtime,
        )

    @classmethod
    def delete(cls, remote_id: str, path: str, is_folder: bool = False) -> "Operation":
        return cls(OperationKind.DELETE, path, remote_id=remote_id, is_folder=is_folder)

    @property
    def depth(self) -> int:
        return self.path.count("/") + 1

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def parent_path(self) -> str:
        """Relative path of the parent directory ("" for top-level paths)."""
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""

    def describe(self) -> str:
        """Short human-readable description."""
        if self.kind is OperationKind.CREATE_FOLDER:
            return f"create folder {self.path}/"
        if self.kind is OperationKind.UPLOAD_NEW:
            return f"upload {self.path}"
        if self.kind is OperationKind.UPDATE_CONTENT:
            return f"update {self.path}"
        if self.kind is OperationKind.DELETE:
            return f"delete {self.path}{'/' if self.is_folder else ''}"
        raise ValueError(f"Unknown operation kind: {self.kind}")


@dataclass
class SyncPlan:
    """Ordered sequence of operations with index-based dependencies.

    The order is topological: every index listed in an operation's
    ``depends_on`` is smaller than the operation's own index.
    """

    operations: list[Operation] = field(default_factory=list)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __getitem__(self, index: int) -> Operation:
        return self.operations[index]

    def __bool__(self) -> bool:
        return bool(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def counts(self) -> dict[OperationKind, int]:
        """Number of operations per kind."""
        counter = Counter(op.kind for op in self.operations)
        return {kind: counter.get(kind, 0) for kind in OperationKind}

    def dependents(self) -> dict[int, list[int]]:
        """Map each operation index to the indices that depend on it."""
        result: dict[int, list[int]] = {i: [] for i in range(len(self.operations))}
        for index, op in enumerate(self.operations):
            for dependency in sorted(set(op.depends_on)):
                result[dependency].append(index)
        return result

    def validate(self) -> None:
        """Check the topological invariant.

        Raises:
            ValueError: If an operation depends on itself or a later operation
        """
        for index, op in enumerate(self.operations):
            for dependency in op.depends_on:
                if not 0 <= dependency < index:
                    raise ValueError(
                        f"Operation {index} ({op.describe()}) has invalid "
                        f"dependency {dependency}"
                    )


class ErrorCategory(str, Enum):
    """Classification of operation failures."""

    TRANSIENT = "transient"
    """Worth retrying (timeouts, rate limits, 5xx)"""

    FATAL = "fatal"
    """Stops the whole run (authorization, quota, state store failures)"""

    PERMANENT = "permanent"
    """Fails this operation only (not found, forbidden)"""

    LOCAL = "local"
    """Local I/O problem (file vanished or unreadable)"""


@dataclass
class FailedOperation:
    """An operation that could not be completed."""

    operation: Operation
    category: ErrorCategory
    error: str
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.operation.kind.value,
            "path": self.operation.path,
            "category": self.category.value,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class RunSummary:
    """Outcome of executing a sync plan."""

    completed: dict[OperationKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in OperationKind}
    )
    """Number of successfully applied operations per kind"""

    failed: list[FailedOperation] = field(default_factory=list)
    """Operations that were attempted and gave up"""

    blocked: list[Operation] = field(default_factory=list)
    """Operations not attempted because an operation they depend on failed"""

    cancelled: list[Operation] = field(default_factory=list)
    """Operations not started because the run was cancelled"""

    retries: dict[str, int] = field(default_factory=dict)
    """Number of retries per path (only paths that needed retries)"""

    fatal_error: Optional[BaseException] = None
    """Error that aborted the run, if any"""

    planned: dict[OperationKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in OperationKind}
    )
    """Number of planned operations per kind"""

    root_errors: list[str] = field(default_factory=list)
    """Input roots that could not be synced at all"""

    dry_run: bool = False

    def record_success(self, operation: Operation) -> None:
        self.completed[operation.kind] = self.completed.get(operation.kind, 0) + 1

    def record_retries(self, path: str, count: int) -> None:
        if count:
            self.retries[path] = self.retries.get(path, 0) + count

    def count(self, kind: OperationKind) -> int:
        return self.completed.get(kind, 0)

    def retries_for(self, path: str) -> int:
        return self.retries.get(path, 0)

    @property
    def total_completed(self) -> int:
        return sum(self.completed.values())

    @property
    def total_retries(self) -> int:
        return sum(self.retries.values())

    @property
    def aborted(self) -> bool:
        return self.fatal_error is not None

    @property
    def succeeded(self) -> bool:
        """True if nothing failed, was blocked or was cancelled."""
        return not (
            self.failed
            or self.blocked
            or self.cancelled
            or self.root_errors
            or self.aborted
        )

    def merge(self, other: "RunSummary") -> None:
        """Add the results of another run (e.g. another input root)."""
        for kind, count in other.completed.items():
            self.completed[kind] = self.completed.get(kind, 0) + count
        for kind, count in other.planned.items():
            self.planned[kind] = self.planned.get(kind, 0) + count
        self.root_errors.extend(other.root_errors)
        self.failed.extend(other.failed)
        self.blocked.extend(other.blocked)
        self.cancelled.extend(other.cancelled)
        for path, count in other.retries.items():
            self.record_retries(path, count)
        if other.fatal_error is not None and self.fatal_error is None:
            self.fatal_error = other.fatal_error

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to a dictionary for JSON output."""
        return {
            "planned": {kind.value: count for kind, count in self.planned.items()},
            "completed": {kind.value: count for kind, count in self.completed.items()},
            "root_errors": list(self.root_errors),
            "failed": [failure.to_dict() for failure in self.failed],
            "blocked": [op.path for op in self.blocked],
            "cancelled": [op.path for op in self.cancelled],
            "retries": dict(self.retries),
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "dry_run": self.dry_run,
        }
