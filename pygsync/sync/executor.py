"""Execution of sync plans against remote storage.

A dispatcher loop owns the plan's dependency graph. Operations whose
dependencies have all succeeded are moved to a ready queue and handed to a
bounded thread pool; an operation on a new path is only dispatched once the
folder it goes into exists remotely and its identifier is known.

Each worker acquires a rate-limit permit, performs the remote call (retrying
transient failures with exponential backoff) and writes the resulting state
record before it reports back. Operations that depend on a failed operation
are reported as blocked. A fatal error (or an external :meth:`cancel`) stops
the dispatch of new operations; calls already in flight finish and their
results are still stored.
"""

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from ..exceptions import (
    AuthError,
    GSyncError,
    NetworkError,
    NotFoundError,
    PlanError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    StateStoreError,
)
from ..utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, DEFAULT_WORKERS
from .operations import (
    ErrorCategory,
    FailedOperation,
    Operation,
    OperationKind,
    RunSummary,
    SyncPlan,
)
from .protocols import StorageClient
from .ratelimit import NullRateLimiter, TokenBucket
from .state import RemoteMapping, StateStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Operation, bool], None]

# Operations that leave a new remote object behind
CREATE_KINDS = (OperationKind.CREATE_FOLDER, OperationKind.UPLOAD_NEW)

# Failures after which the server may still have applied the request
AMBIGUOUS_ERRORS = (NetworkError, ServerError)


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an exception raised while applying an operation.

    Args:
        error: The exception

    Returns:
        Error category deciding whether to retry, skip or abort
    """
    if isinstance(error, (AuthError, QuotaExceededError, StateStoreError)):
        return ErrorCategory.FATAL
    if isinstance(error, (RateLimitError, ServerError, NetworkError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, OSError):
        return ErrorCategory.LOCAL
    return ErrorCategory.PERMANENT


@dataclass
class OperationOutcome:
    """Result of applying one operation (returned by a worker)."""

    index: int
    remote_id: Optional[str] = None
    retries: int = 0
    error: Optional[BaseException] = None
    category: Optional[ErrorCategory] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PlanExecutor:
    """Applies a SyncPlan with bounded concurrency."""

    def __init__(
        self,
        client: StorageClient,
        store: StateStore,
        local_root: Path,
        root_folder_id: str,
        max_workers: int = DEFAULT_WORKERS,
        rate_limiter: Optional[Union[TokenBucket, NullRateLimiter]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the executor.

        Args:
            client: Remote storage client
            store: State store updated after every successful operation
            local_root: Local directory the plan's paths are relative to
            root_folder_id: Remote folder that corresponds to ``local_root``
            max_workers: Number of operations applied in parallel
            rate_limiter: Permit source shared by all workers
            max_retries: Retries of a transient failure before giving up
            retry_delay: Initial backoff delay in seconds
            progress_callback: Called with (operation, success) after each
                attempted operation, from the dispatching thread
            sleep: Function used for backoff waits
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.client = client
        self.store = store
        self.local_root = local_root
        self.root_folder_id = root_folder_id
        self.max_workers = max_workers
        self.rate_limiter = rate_limiter or NullRateLimiter()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.progress_callback = progress_callback
        self._sleep = sleep
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching new operations; in-flight operations still finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def execute(self, plan: SyncPlan) -> RunSummary:
        """Apply all operations of a plan.

        Args:
            plan: Plan produced by the reconciler

        Returns:
            Summary of the run. If a fatal error occurred, ``fatal_error`` is
            set and operations that were not started are listed as cancelled.
        """
        summary = RunSummary()
        if not plan:
            return summary
        plan.validate()

        dependents = plan.dependents()
        pending = {i: len(set(op.depends_on)) for i, op in enumerate(plan)}
        ready: deque[int] = deque(i for i, count in pending.items() if count == 0)
        folder_ids: dict[str, str] = {}
        handled: set[int] = set()
        in_flight: dict[Future, int] = {}

        logger.debug(
            f"Executing {len(plan)} operation(s) with {self.max_workers} worker(s)"
        )

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="pygsync-worker"
        ) as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.max_workers and not self.cancelled:
                    index = ready.popleft()
                    op = plan[index]
                    try:
                        parent_id = self._resolve_parent_id(op, folder_ids)
                    except PlanError as e:
                        logger.error(f"Cannot {op.describe()}: {e}")
                        handled.add(index)
                        summary.blocked.append(op)
                        self._block_dependents(plan, index, dependents, handled, summary)
                        self._notify(op, False)
                        continue
                    in_flight[pool.submit(self._apply, index, op, parent_id)] = index

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    outcome = future.result()
                    op = plan[index]
                    handled.add(index)
                    summary.record_retries(op.path, outcome.retries)

                    if outcome.ok:
                        summary.record_success(op)
                        if op.kind is OperationKind.CREATE_FOLDER and outcome.remote_id:
                            folder_ids[op.path] = outcome.remote_id
                        for dependent in dependents[index]:
                            pending[dependent] -= 1
                            if pending[dependent] == 0 and dependent not in handled:
                                ready.append(dependent)
                        self._notify(op, True)
                        continue

                    category = outcome.category or ErrorCategory.PERMANENT
                    summary.failed.append(
                        FailedOperation(
                            operation=op,
                            category=category,
                            error=str(outcome.error),
                            attempts=outcome.retries + 1,
                        )
                    )
                    self._block_dependents(plan, index, dependents, handled, summary)
                    self._notify(op, False)

                    if category is ErrorCategory.FATAL and summary.fatal_error is None:
                        logger.error(f"Fatal error, aborting sync: {outcome.error}")
                        summary.fatal_error = outcome.error
                        self.cancel()

        for index, op in enumerate(plan):
            if index not in handled:
                summary.cancelled.append(op)

        if summary.cancelled:
            logger.warning(f"{len(summary.cancelled)} operation(s) were not started")
        return summary

    def _notify(self, op: Operation, success: bool) -> None:
        if self.progress_callback is not None:
            self.progress_callback(op, success)

    def _block_dependents(
        self,
        plan: SyncPlan,
        index: int,
        dependents: dict[int, list[int]],
        handled: set[int],
        summary: RunSummary,
    ) -> None:
        """Mark every operation that (transitively) depends on ``index`` as blocked."""
        stack = list(dependents[index])
        while stack:
            dependent = stack.pop()
            if dependent in handled:
                continue
            handled.add(dependent)
            op = plan[dependent]
            logger.warning(f"Skipping {op.describe()}: a required operation failed")
            summary.blocked.append(op)
            stack.extend(dependents[dependent])

    def _resolve_parent_id(
        self, op: Operation, folder_ids: dict[str, str]
    ) -> Optional[str]:
        """Find the remote folder an operation's path lives in.

        Raises:
            PlanError: If the parent folder has no known remote identifier
        """
        if op.kind is OperationKind.DELETE:
            return None
        if op.kind is OperationKind.UPDATE_CONTENT:
            existing = self.store.get(op.path)
            return existing.parent_id if existing else None

        parent = op.parent_path
        if not parent:
            return self.root_folder_id
        if parent in folder_ids:
            return folder_ids[parent]
        mapping = self.store.get(parent)
        if mapping is not None and mapping.is_folder:
            return mapping.remote_id
        raise PlanError(f"remote folder for '{parent}' is unknown")

    def _backoff_delay(self, error: BaseException, retries: int) -> float:
        base_delay = self.retry_delay * (2**retries)
        # Add jitter: +/- 25% of base delay
        delay = base_delay + base_delay * 0.25 * (2 * random.random() - 1)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay

    def _apply(self, index: int, op: Operation, parent_id: Optional[str]) -> OperationOutcome:
        """Apply one operation, retrying transient failures (runs in a worker)."""
        retries = 0
        start = time.time()
        # Set when a create may have reached the server before failing
        maybe_created = False

        while True:
            self.rate_limiter.acquire()
            try:
                remote_id = None
                if maybe_created:
                    remote_id = self._find_created(op, parent_id)
                    if remote_id is None:
                        self.rate_limiter.acquire()
                if remote_id is None:
                    remote_id = self._perform(op, parent_id)
                break
            except (GSyncError, OSError) as e:
                category = classify_error(e)
                if (
                    category is ErrorCategory.TRANSIENT
                    and retries < self.max_retries
                    and not self.cancelled
                ):
                    if op.kind in CREATE_KINDS and isinstance(e, AMBIGUOUS_ERRORS):
                        maybe_created = True
                    delay = self._backoff_delay(e, retries)
                    logger.warning(
                        f"{op.describe()} failed "
                        f"(attempt {retries + 1}/{self.max_retries + 1}), "
                        f"retrying in {delay:.1f}s: {e}"
                    )
                    self._sleep(delay)
                    retries += 1
                    continue
                logger.error(f"Failed to {op.describe()}: {e}")
                return OperationOutcome(index, retries=retries, error=e, category=category)

        try:
            self._record(op, parent_id, remote_id)
        except StateStoreError as e:
            logger.error(f"Remote {op.describe()} succeeded but state was not saved: {e}")
            return OperationOutcome(
                index, retries=retries, error=e, category=ErrorCategory.FATAL
            )

        logger.debug(f"Completed {op.describe()} in {time.time() - start:.2f}s")
        return OperationOutcome(index, remote_id=remote_id, retries=retries)

    def _find_created(self, op: Operation, parent_id: Optional[str]) -> Optional[str]:
        """Look for the object a failed create attempt may have left behind."""
        if parent_id is None:
            raise PlanError(f"no remote parent for {op.path}")
        if op.kind is OperationKind.CREATE_FOLDER:
            remote_id = self.client.find_folder(op.name, parent_id)
        else:
            remote_id = self.client.find_file(op.name, parent_id, op.fingerprint or "")
        if remote_id is not None:
            logger.info(f"{op.describe()} had already succeeded remotely ({remote_id})")
        return remote_id

    def _perform(self, op: Operation, parent_id: Optional[str]) -> str:
        """Issue the remote call for an operation and return the remote ID."""
        if op.kind is OperationKind.CREATE_FOLDER:
            if parent_id is None:
                raise PlanError(f"no remote parent for {op.path}")
            return self.client.create_folder(parent_id, op.name)

        if op.kind is OperationKind.UPLOAD_NEW:
            if parent_id is None:
                raise PlanError(f"no remote parent for {op.path}")
            with open(self.local_root / op.path, "rb") as stream:
                return self.client.upload_file(
                    parent_id, op.name, stream, op.fingerprint or ""
                )

        if op.kind is OperationKind.UPDATE_CONTENT:
            if op.remote_id is None:
                raise PlanError(f"no remote object for {op.path}")
            with open(self.local_root / op.path, "rb") as stream:
                try:
                    self.client.update_file(op.remote_id, stream, op.fingerprint or "")
                    return op.remote_id
                except NotFoundError:
                    if parent_id is None:
                        raise
                    # Deleted remotely; upload it again
                    logger.warning(f"Remote copy of {op.path} is gone, uploading it again")
                    stream.seek(0)
                    return self.client.upload_file(
                        parent_id, op.name, stream, op.fingerprint or ""
                    )

        if op.kind is OperationKind.DELETE:
            if op.remote_id is None:
                raise PlanError(f"no remote object for {op.path}")
            try:
                self.client.delete_object(op.remote_id)
            except NotFoundError:
                logger.debug(f"Remote object of {op.path} is already gone")
            return op.remote_id

        raise ValueError(f"Unknown operation kind: {op.kind}")

    def _record(self, op: Operation, parent_id: Optional[str], remote_id: str) -> None:
        """Persist the state change of a completed operation."""
        if op.kind is OperationKind.DELETE:
            self.store.remove(op.path)
            return

        self.store.put(
            RemoteMapping(
                path=op.path,
                remote_id=remote_id,
                parent_id=parent_id,
                is_folder=op.kind is OperationKind.CREATE_FOLDER,
                fingerprint=op.fingerprint,
                mtime=op.mtime,
                size=op.size,
            )
        )
