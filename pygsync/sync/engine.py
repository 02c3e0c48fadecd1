"""Sync engine orchestrating scan, reconcile and execute for each input root."""

import logging
import time
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional, Union

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..exceptions import ConfigError, GSyncError, SyncAbortedError
from ..output import OutputFormatter
from ..utils import (
    DEFAULT_IGNORE_FILE_NAME,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RATE_LIMIT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_WORKERS,
    format_size,
)
from .executor import PlanExecutor, classify_error
from .ignore import IgnoreFileReader, PatternMatcher
from .operations import ErrorCategory, Operation, OperationKind, RunSummary, SyncPlan
from .protocols import StorageClient
from .ratelimit import NullRateLimiter, TokenBucket
from .reconciler import Reconciler
from .scanner import DirectoryScanner, LocalEntry
from .state import RemoteMapping, StateStore, StateStoreManager

logger = logging.getLogger(__name__)

CONTAINER_META_KEY = "container_id"
"""State store metadata key holding the remote folder of an input root"""


class SyncEngine:
    """Core sync engine that backs up local directories to remote storage."""

    def __init__(
        self,
        client: StorageClient,
        state_manager: Optional[StateStoreManager] = None,
        output: Optional[OutputFormatter] = None,
        workers: int = DEFAULT_WORKERS,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        ignore_patterns: Optional[list[str]] = None,
        ignore_file_name: str = DEFAULT_IGNORE_FILE_NAME,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize sync engine.

        Args:
            client: Remote storage client
            state_manager: Locates the state database of each input root
            output: Output formatter for displaying progress/status
            workers: Number of operations applied in parallel
            rate_limit: Maximum remote requests per second (0 disables)
            max_retries: Retries of a transient failure before giving up
            retry_delay: Initial backoff delay in seconds
            ignore_patterns: Extra ignore patterns applied to every root
            ignore_file_name: Name of the per-directory ignore files
            sleep: Function used for backoff waits
        """
        self.client = client
        self.state_manager = state_manager or StateStoreManager()
        self.output = output or OutputFormatter()
        self.workers = workers
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.ignore_patterns = list(ignore_patterns or [])
        self.ignore_file_name = ignore_file_name
        self._sleep = sleep
        self.rate_limiter: Union[TokenBucket, NullRateLimiter] = (
            TokenBucket(rate_limit) if rate_limit > 0 else NullRateLimiter()
        )

    def sync_many(
        self, roots: list[Path], remote_parent_id: str, dry_run: bool = False
    ) -> RunSummary:
        """Sync several input roots, each into its own container folder.

        A root that cannot be synced at all (missing, unreadable, remote
        container not creatable) is reported and the next root is synced.

        Args:
            roots: Local directories to back up
            remote_parent_id: Remote folder receiving one container per root
            dry_run: If True, only show what would be done

        Returns:
            Combined summary of all roots

        Raises:
            ConfigError: If two roots would share a container folder
            SyncAbortedError: If a fatal error stopped the run
        """
        names: dict[str, Path] = {}
        for root in roots:
            name = self._container_name(root)
            if name in names:
                raise ConfigError(
                    f"Input directories {names[name]} and {root} would both be "
                    f"backed up into a folder named '{name}'"
                )
            names[name] = root

        total = RunSummary(dry_run=dry_run)
        for root in roots:
            try:
                summary = self.sync_directory(root, remote_parent_id, dry_run=dry_run)
            except SyncAbortedError as e:
                total.merge(e.summary)
                raise SyncAbortedError(str(e), total, e.cause) from e
            except (GSyncError, ValueError) as e:
                if classify_error(e) is ErrorCategory.FATAL:
                    total.fatal_error = e
                    raise SyncAbortedError(f"Sync of {root} aborted: {e}", total, e) from e
                self.output.error(f"Cannot sync {root}: {e}")
                total.root_errors.append(str(root))
                continue
            total.merge(summary)
        return total

    def sync_directory(
        self, local_root: Path, remote_parent_id: str, dry_run: bool = False
    ) -> RunSummary:
        """Sync a single input root.

        Args:
            local_root: Local directory to back up
            remote_parent_id: Remote folder that receives the root's container
            dry_run: If True, only show what would be done (no remote calls,
                no state changes)

        Returns:
            Summary of the run

        Raises:
            ValueError: If the local directory does not exist
            ScanError: If the local directory cannot be read
            SyncAbortedError: If a fatal error stopped the run

        Examples:
            >>> engine = SyncEngine(client)  # doctest: +SKIP
            >>> summary = engine.sync_directory(Path("/home/user/docs"), "root")  # doctest: +SKIP
            >>> print(summary.count(OperationKind.UPLOAD_NEW))  # doctest: +SKIP
        """
        if not local_root.exists():
            raise ValueError(f"Local directory does not exist: {local_root}")
        if not local_root.is_dir():
            raise ValueError(f"Local path is not a directory: {local_root}")

        if not self.output.quiet:
            self.output.info(f"Syncing: {local_root}")
            if dry_run:
                self.output.info("Dry run: No changes will be made")
            self.output.print("")

        state_path = self.state_manager.get_state_path(local_root, remote_parent_id)
        if dry_run and not state_path.exists():
            # Never synced; nothing to compare against and nothing to create
            return self._sync_with_store(local_root, remote_parent_id, None, dry_run)

        with self.state_manager.open(local_root, remote_parent_id) as store:
            return self._sync_with_store(local_root, remote_parent_id, store, dry_run)

    def _sync_with_store(
        self,
        local_root: Path,
        remote_parent_id: str,
        store: Optional[StateStore],
        dry_run: bool,
    ) -> RunSummary:
        # Step 1: Scan local files
        matcher = PatternMatcher(
            reader=IgnoreFileReader(self.ignore_file_name),
            global_patterns=self.ignore_patterns,
        )
        scanner = DirectoryScanner(
            matcher=matcher, lookup=store.get if store is not None else None
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            disable=self.output.silent,
        ) as progress:
            task = progress.add_task("Scanning local directory...", total=None)
            entries = scanner.scan(local_root)
            progress.update(task, description=f"Found {len(entries)} local entries")

        for error in scanner.errors:
            self.output.warning(str(error))
        if scanner.errors:
            self.output.warning(
                f"{len(scanner.errors)} path(s) could not be read; "
                "their remote copies are kept"
            )

        # Step 2: Compare with the stored state
        stored = store.all() if store is not None else []
        plan = Reconciler().reconcile(entries, stored, scanner.unreadable_paths)
        if store is not None and not dry_run:
            self._refresh_timestamps(entries, stored, store)

        # Step 3: Display plan
        self._display_sync_plan(plan, dry_run)

        if dry_run or plan.is_empty:
            summary = RunSummary(dry_run=dry_run)
            summary.planned = plan.counts()
            if not self.output.quiet:
                self._display_summary(summary, dry_run)
            return summary

        if store is None:
            raise RuntimeError("a state store is required to apply changes")

        # Step 4: Execute
        container_id = self._ensure_container(store, local_root, remote_parent_id)
        summary = self._execute_plan(plan, store, local_root, container_id)
        summary.planned = plan.counts()

        # Step 5: Display summary
        if not self.output.quiet:
            self._display_summary(summary, dry_run)

        if summary.aborted:
            raise SyncAbortedError(
                f"Sync of {local_root} aborted: {summary.fatal_error}",
                summary,
                summary.fatal_error,
            )
        return summary

    @staticmethod
    def _refresh_timestamps(
        entries: Iterable[LocalEntry], stored: list[RemoteMapping], store: StateStore
    ) -> int:
        """Record new modification times of files whose content is unchanged.

        Without this a touched file would be hashed again on every run.
        """
        mappings = {mapping.path: mapping for mapping in stored}
        refreshed = 0
        for entry in entries:
            mapping = mappings.get(entry.relative_path)
            if (
                mapping is None
                or entry.is_dir
                or mapping.is_folder
                or mapping.fingerprint != entry.fingerprint
                or (mapping.mtime, mapping.size) == (entry.mtime, entry.size)
            ):
                continue
            store.put(replace(mapping, mtime=entry.mtime, size=entry.size))
            refreshed += 1
        if refreshed:
            logger.debug(f"Refreshed modification times of {refreshed} unchanged file(s)")
        return refreshed

    @staticmethod
    def _container_name(local_root: Path) -> str:
        return local_root.resolve().name or "backup"

    def _ensure_container(
        self, store: StateStore, local_root: Path, remote_parent_id: str
    ) -> str:
        """Return the remote folder of an input root, creating it on first use.

        An existing folder with the root's name is adopted so that a lost
        state database does not lead to a second copy of the backup.
        """
        container_id = store.get_meta(CONTAINER_META_KEY)
        if container_id:
            return container_id

        name = self._container_name(local_root)
        self.rate_limiter.acquire()
        container_id = self.client.find_folder(name, remote_parent_id)
        if container_id:
            logger.info(f"Using existing remote folder '{name}' ({container_id})")
        else:
            self.rate_limiter.acquire()
            container_id = self.client.create_folder(remote_parent_id, name)
            logger.info(f"Created remote folder '{name}' ({container_id})")
        store.set_meta(CONTAINER_META_KEY, container_id)
        return container_id

    def _execute_plan(
        self,
        plan: SyncPlan,
        store: StateStore,
        local_root: Path,
        container_id: str,
    ) -> RunSummary:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            disable=self.output.silent,
        ) as progress:
            task = progress.add_task("Syncing...", total=len(plan))

            def on_progress(op: Operation, success: bool) -> None:
                progress.update(task, advance=1, description=op.describe())

            executor = PlanExecutor(
                client=self.client,
                store=store,
                local_root=local_root,
                root_folder_id=container_id,
                max_workers=self.workers,
                rate_limiter=self.rate_limiter,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                progress_callback=on_progress,
                sleep=self._sleep,
            )
            return executor.execute(plan)

    def _display_sync_plan(self, plan: SyncPlan, dry_run: bool) -> None:
        """Display sync plan to user.

        Args:
            plan: Plan produced by the reconciler
            dry_run: Whether this is a dry run
        """
        if self.output.silent:
            return

        if plan.is_empty:
            return

        counts = plan.counts()
        self.output.info("Sync plan:")
        if counts[OperationKind.CREATE_FOLDER]:
            self.output.info(
                f"  + Create folder: {counts[OperationKind.CREATE_FOLDER]} folder(s)"
            )
        if counts[OperationKind.UPLOAD_NEW]:
            self.output.info(f"  ↑ Upload: {counts[OperationKind.UPLOAD_NEW]} file(s)")
        if counts[OperationKind.UPDATE_CONTENT]:
            self.output.info(
                f"  ↑ Update: {counts[OperationKind.UPDATE_CONTENT]} file(s)"
            )
        if counts[OperationKind.DELETE]:
            self.output.info(f"  ✗ Delete remote: {counts[OperationKind.DELETE]} item(s)")
        transfer_bytes = sum(op.size for op in plan if not op.kind.is_delete)
        if transfer_bytes:
            self.output.info(f"  Data to transfer: {format_size(transfer_bytes)}")

        if dry_run:
            self.output.print("")
            for op in plan:
                self.output.info(f"  {op.describe()}")

        self.output.print("")

    def _display_summary(self, summary: RunSummary, dry_run: bool) -> None:
        """Display sync summary.

        Args:
            summary: Summary of the run
            dry_run: Whether this was a dry run
        """
        if dry_run:
            self.output.success("Dry run complete!")
            if not any(summary.planned.values()):
                self.output.info("No changes needed - everything is in sync!")
            return

        if summary.aborted:
            self.output.error(f"Sync aborted: {summary.fatal_error}")
        elif summary.succeeded:
            self.output.success("Sync complete!")
        else:
            self.output.warning("Sync finished with errors")

        if summary.total_completed > 0:
            self.output.info(f"Total actions: {summary.total_completed}")
            if summary.count(OperationKind.CREATE_FOLDER):
                self.output.info(
                    f"  Folders created: {summary.count(OperationKind.CREATE_FOLDER)}"
                )
            if summary.count(OperationKind.UPLOAD_NEW):
                self.output.info(
                    f"  Uploaded: {summary.count(OperationKind.UPLOAD_NEW)}"
                )
            if summary.count(OperationKind.UPDATE_CONTENT):
                self.output.info(
                    f"  Updated: {summary.count(OperationKind.UPDATE_CONTENT)}"
                )
            if summary.count(OperationKind.DELETE):
                self.output.info(
                    f"  Deleted remotely: {summary.count(OperationKind.DELETE)}"
                )
        elif summary.succeeded:
            self.output.info("No changes needed - everything is in sync!")

        if summary.total_retries:
            self.output.info(f"Retries: {summary.total_retries}")
        for failure in summary.failed:
            self.output.error(
                f"  {failure.operation.describe()} ({failure.category.value}): "
                f"{failure.error}"
            )
        if summary.blocked:
            self.output.warning(
                f"{len(summary.blocked)} operation(s) skipped because a required "
                "operation failed"
            )
        if summary.cancelled:
            self.output.warning(f"{len(summary.cancelled)} operation(s) not started")
