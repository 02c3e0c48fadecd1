"""Tests for plan execution."""

from pathlib import Path
from unittest.mock import Mock

import pytest

from pygsync.exceptions import (
    AuthError,
    DrivePermissionError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    StateStoreError,
)
from pygsync.sync.executor import PlanExecutor, classify_error
from pygsync.sync.operations import (
    ErrorCategory,
    Operation,
    OperationKind,
    SyncPlan,
)
from pygsync.sync.ratelimit import TokenBucket
from pygsync.sync.state import RemoteMapping, StateStore
from pygsync.utils import content_fingerprint


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    """Create a local root with a few files."""
    root = tmp_path / "root"
    root.mkdir()
    (root / "a.txt").write_text("hello")
    (root / "b.txt").write_text("bravo")
    (root / "docs").mkdir()
    (root / "docs" / "c.txt").write_text("charlie")
    return root


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_executor(fake_drive, store, local_root, sleeps):
    """Factory for executors with instant backoff."""

    def factory(**kwargs) -> PlanExecutor:
        kwargs.setdefault("max_workers", 2)
        return PlanExecutor(
            client=fake_drive,
            store=store,
            local_root=local_root,
            root_folder_id="container",
            sleep=sleeps.append,
            **kwargs,
        )

    return factory


def upload(path: str, content: bytes, depends_on: tuple[int, ...] = ()) -> Operation:
    return Operation(
        OperationKind.UPLOAD_NEW,
        path,
        fingerprint=content_fingerprint(content),
        size=len(content),
        depends_on=depends_on,
    )


class TestClassifyError:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        "error",
        [RateLimitError(), ServerError("boom", 503), NetworkError("timeout")],
    )
    def test_transient(self, error):
        """Test errors worth retrying."""
        assert classify_error(error) is ErrorCategory.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [AuthError("revoked"), QuotaExceededError("full", 403), StateStoreError("disk")],
    )
    def test_fatal(self, error):
        """Test errors that abort the run."""
        assert classify_error(error) is ErrorCategory.FATAL

    @pytest.mark.parametrize(
        "error",
        [
            NotFoundError("gone", 404),
            DrivePermissionError("forbidden", 403),
            InvalidResponseError("bad json"),
        ],
    )
    def test_permanent(self, error):
        """Test errors that fail a single operation."""
        assert classify_error(error) is ErrorCategory.PERMANENT

    def test_local(self):
        """Test local I/O errors."""
        assert classify_error(FileNotFoundError(2, "No such file")) is ErrorCategory.LOCAL


class TestPlanExecutor:
    """Tests for successful execution."""

    def test_empty_plan(self, make_executor, fake_drive):
        """Test executing an empty plan."""
        summary = make_executor().execute(SyncPlan())
        assert summary.succeeded
        assert fake_drive.calls == []

    def test_upload_records_fingerprint(self, make_executor, fake_drive, store):
        """Test a successful upload stores the mapping with its fingerprint."""
        plan = SyncPlan([upload("a.txt", b"hello")])

        summary = make_executor().execute(plan)

        assert summary.succeeded
        assert summary.count(OperationKind.UPLOAD_NEW) == 1
        mapping = store.get("a.txt")
        assert mapping.fingerprint == content_fingerprint(b"hello")
        assert mapping.parent_id == "container"
        assert mapping.size == 5
        assert fake_drive.objects[mapping.remote_id]["content"] == b"hello"

    def test_children_use_created_folder_id(self, make_executor, fake_drive, store):
        """Test files are uploaded into the folder created in the same run."""
        plan = SyncPlan(
            [
                Operation.create_folder("docs"),
                upload("docs/c.txt", b"charlie", depends_on=(0,)),
            ]
        )

        summary = make_executor().execute(plan)

        assert summary.succeeded
        folder = store.get("docs")
        assert folder.is_folder
        assert folder.parent_id == "container"
        assert store.get("docs/c.txt").parent_id == folder.remote_id
        assert fake_drive.tree("container") == {"docs": None, "docs/c.txt": b"charlie"}

    def test_parent_from_stored_mapping(self, make_executor, fake_drive, store):
        """Test files in previously created folders use the stored folder ID."""
        folder_id = fake_drive.create_folder("container", "docs")
        store.put(RemoteMapping(path="docs", remote_id=folder_id, is_folder=True))

        summary = make_executor().execute(SyncPlan([upload("docs/c.txt", b"charlie")]))

        assert summary.succeeded
        assert store.get("docs/c.txt").parent_id == folder_id

    def test_update_content(self, make_executor, fake_drive, store, local_root):
        """Test UpdateContent replaces the content and the stored fingerprint."""
        remote_id = fake_drive.create_folder("container", "a.txt")
        fake_drive.objects[remote_id].update(folder=False, content=b"old")
        store.put(
            RemoteMapping(
                path="a.txt", remote_id=remote_id, parent_id="container", fingerprint="old"
            )
        )
        new_fp = content_fingerprint(b"hello")

        plan = SyncPlan([Operation.update_content("a.txt", remote_id, new_fp, size=5)])
        summary = make_executor().execute(plan)

        assert summary.count(OperationKind.UPDATE_CONTENT) == 1
        assert store.get("a.txt").fingerprint == new_fp
        assert store.get("a.txt").parent_id == "container"
        assert fake_drive.objects[remote_id]["content"] == b"hello"

    def test_delete_removes_mapping(self, make_executor, fake_drive, store):
        """Test a successful Delete removes the state record."""
        remote_id = fake_drive.create_folder("container", "old")
        store.put(RemoteMapping(path="old", remote_id=remote_id, is_folder=True))

        summary = make_executor().execute(
            SyncPlan([Operation.delete(remote_id, "old", is_folder=True)])
        )

        assert summary.count(OperationKind.DELETE) == 1
        assert store.get("old") is None
        assert remote_id not in fake_drive.objects

    def test_delete_of_missing_object_counts_as_success(
        self, make_executor, fake_drive, store
    ):
        """Test deleting an object that is already gone."""
        store.put(RemoteMapping(path="old.txt", remote_id="vanished"))

        summary = make_executor().execute(SyncPlan([Operation.delete("vanished", "old.txt")]))

        assert summary.succeeded
        assert store.get("old.txt") is None

    def test_many_operations_in_parallel(self, make_executor, fake_drive, store, local_root):
        """Test a larger plan with several workers."""
        ops = [Operation.create_folder("many")]
        for i in range(30):
            content = f"file {i}".encode()
            (local_root / "many").mkdir(exist_ok=True)
            (local_root / "many" / f"{i}.txt").write_bytes(content)
            ops.append(upload(f"many/{i}.txt", content, depends_on=(0,)))

        summary = make_executor(max_workers=4).execute(SyncPlan(ops))

        assert summary.succeeded
        assert summary.count(OperationKind.UPLOAD_NEW) == 30
        assert len(store) == 31
        assert fake_drive.calls[0] == ("create_folder", "many")

    def test_progress_callback(self, make_executor):
        """Test the callback is invoked once per operation."""
        callback = Mock()
        plan = SyncPlan([upload("a.txt", b"hello"), upload("b.txt", b"bravo")])

        make_executor(progress_callback=callback).execute(plan)

        assert callback.call_count == 2
        assert {call.args[1] for call in callback.call_args_list} == {True}

    def test_rate_limiter_permit_per_attempt(self, make_executor, fake_drive):
        """Test a permit is acquired for every attempt, including retries."""
        limiter = Mock(spec=TokenBucket)
        limiter.acquire.return_value = 0.0
        fake_drive.fail("upload_file", "a.txt", RateLimitError())

        make_executor(rate_limiter=limiter).execute(SyncPlan([upload("a.txt", b"hello")]))

        assert limiter.acquire.call_count == 2

    def test_rate_limiter_permit_for_lookup(self, make_executor, fake_drive):
        """Test the lookup after a lost response takes its own permit."""
        limiter = Mock(spec=TokenBucket)
        limiter.acquire.return_value = 0.0
        fake_drive.fail("upload_file", "a.txt", NetworkError("timeout"))

        make_executor(rate_limiter=limiter).execute(SyncPlan([upload("a.txt", b"hello")]))

        # upload, lookup, upload again
        assert limiter.acquire.call_count == 3

    def test_invalid_worker_count(self, fake_drive, store, local_root):
        """Test that at least one worker is required."""
        with pytest.raises(ValueError):
            PlanExecutor(fake_drive, store, local_root, "container", max_workers=0)


class TestPlanExecutorRetries:
    """Tests for retry behavior."""

    def test_rate_limited_upload_succeeds_after_retries(
        self, make_executor, fake_drive, store
    ):
        """Test three rate-limit rejections followed by success (scenario 5)."""
        fake_drive.fail(
            "upload_file", "b.txt", RateLimitError(), RateLimitError(), RateLimitError()
        )

        summary = make_executor().execute(SyncPlan([upload("b.txt", b"bravo")]))

        assert summary.count(OperationKind.UPLOAD_NEW) == 1
        assert summary.retries_for("b.txt") == 3
        assert summary.failed == []
        assert store.get("b.txt") is not None

    def test_backoff_grows_exponentially(self, make_executor, fake_drive, sleeps):
        """Test delays double with +/- 25% jitter."""
        fake_drive.fail(
            "upload_file",
            "a.txt",
            ServerError("busy", 503),
            ServerError("busy", 503),
            ServerError("busy", 503),
        )

        make_executor(retry_delay=1.0).execute(SyncPlan([upload("a.txt", b"hello")]))

        assert len(sleeps) == 3
        for attempt, delay in enumerate(sleeps):
            assert 0.75 * 2**attempt <= delay <= 1.25 * 2**attempt

    def test_retry_after_is_honored(self, make_executor, fake_drive, sleeps):
        """Test a Retry-After hint sets the minimum wait."""
        fake_drive.fail("upload_file", "a.txt", RateLimitError(retry_after=30))

        make_executor(retry_delay=0.1).execute(SyncPlan([upload("a.txt", b"hello")]))

        assert sleeps == [30]

    def test_transient_failure_gives_up(self, make_executor, fake_drive, store):
        """Test an operation fails after exhausting its retries."""
        fake_drive.fail("upload_file", "a.txt", *[NetworkError("down")] * 4)

        summary = make_executor(max_retries=3).execute(
            SyncPlan([upload("a.txt", b"hello"), upload("b.txt", b"bravo")])
        )

        assert len(summary.failed) == 1
        failure = summary.failed[0]
        assert failure.operation.path == "a.txt"
        assert failure.category is ErrorCategory.TRANSIENT
        assert failure.attempts == 4
        assert store.get("a.txt") is None
        assert summary.count(OperationKind.UPLOAD_NEW) == 1
        assert not summary.succeeded

    def test_created_folder_with_lost_response_is_reused(
        self, make_executor, fake_drive, store
    ):
        """Test a folder created remotely before a timeout is not created twice."""
        fake_drive.fail_after_commit("create_folder", "docs", NetworkError("timeout"))
        plan = SyncPlan(
            [
                Operation.create_folder("docs"),
                upload("docs/c.txt", b"charlie", depends_on=(0,)),
            ]
        )

        summary = make_executor().execute(plan)

        assert summary.succeeded
        assert summary.retries_for("docs") == 1
        folders = [oid for oid, obj in fake_drive.objects.items() if obj["folder"]]
        assert len(folders) == 1
        assert store.get("docs").remote_id == folders[0]
        assert fake_drive.calls.count(("create_folder", "docs")) == 1
        assert fake_drive.tree("container") == {"docs": None, "docs/c.txt": b"charlie"}

    def test_uploaded_file_with_lost_response_is_reused(
        self, make_executor, fake_drive, store
    ):
        """Test an upload that reached the server before a 503 is not repeated."""
        fake_drive.fail_after_commit("upload_file", "a.txt", ServerError("busy", 503))

        summary = make_executor().execute(SyncPlan([upload("a.txt", b"hello")]))

        assert summary.succeeded
        assert summary.retries_for("a.txt") == 1
        assert len(fake_drive.objects) == 1
        assert store.get("a.txt").remote_id in fake_drive.objects
        assert fake_drive.calls == [("upload_file", "a.txt"), ("find_file", "a.txt")]

    def test_failed_create_is_repeated_when_nothing_was_created(
        self, make_executor, fake_drive, store
    ):
        """Test the create is issued again when the lookup finds nothing."""
        fake_drive.fail("upload_file", "a.txt", NetworkError("timeout"))

        summary = make_executor().execute(SyncPlan([upload("a.txt", b"hello")]))

        assert summary.succeeded
        assert len(fake_drive.objects) == 1
        assert fake_drive.calls == [
            ("upload_file", "a.txt"),
            ("find_file", "a.txt"),
            ("upload_file", "a.txt"),
        ]

    def test_rate_limited_create_skips_lookup(self, make_executor, fake_drive):
        """Test a rejected request is simply repeated."""
        fake_drive.fail("create_folder", "docs", RateLimitError())

        make_executor().execute(SyncPlan([Operation.create_folder("docs")]))

        assert ("find_folder", "docs") not in fake_drive.calls

    def test_permanent_failure_is_not_retried(self, make_executor, fake_drive, sleeps):
        """Test permanent errors fail immediately."""
        fake_drive.fail("upload_file", "a.txt", DrivePermissionError("forbidden", 403))

        summary = make_executor().execute(SyncPlan([upload("a.txt", b"hello")]))

        assert summary.failed[0].category is ErrorCategory.PERMANENT
        assert summary.failed[0].attempts == 1
        assert sleeps == []


class TestPlanExecutorFailures:
    """Tests for blocked, local and fatal failures."""

    def test_failed_folder_blocks_descendants(self, make_executor, fake_drive, store):
        """Test operations below a failed CreateFolder are not attempted."""
        fake_drive.fail("create_folder", "docs", DrivePermissionError("forbidden", 403))
        plan = SyncPlan(
            [
                Operation.create_folder("docs"),
                Operation(
                    OperationKind.CREATE_FOLDER, "docs/sub", is_folder=True, depends_on=(0,)
                ),
                upload("a.txt", b"hello"),
                upload("docs/c.txt", b"charlie", depends_on=(0,)),
                upload("docs/sub/d.txt", b"delta", depends_on=(1,)),
            ]
        )

        summary = make_executor().execute(plan)

        assert [f.operation.path for f in summary.failed] == ["docs"]
        assert {op.path for op in summary.blocked} == {
            "docs/sub",
            "docs/c.txt",
            "docs/sub/d.txt",
        }
        assert summary.count(OperationKind.UPLOAD_NEW) == 1
        assert ("upload_file", "c.txt") not in fake_drive.calls
        assert store.get("docs") is None

    def test_missing_local_file_is_local_failure(self, make_executor, local_root):
        """Test a file removed between scan and upload."""
        summary = make_executor().execute(SyncPlan([upload("vanished.txt", b"x")]))

        assert summary.failed[0].category is ErrorCategory.LOCAL

    def test_update_of_missing_remote_file_without_parent(self, make_executor, store):
        """Test UpdateContent on a deleted file with no known folder keeps the mapping."""
        store.put(RemoteMapping(path="a.txt", remote_id="gone", fingerprint="old"))

        summary = make_executor().execute(
            SyncPlan([Operation.update_content("a.txt", "gone", "new")])
        )

        assert summary.failed[0].category is ErrorCategory.PERMANENT
        assert store.get("a.txt").fingerprint == "old"

    def test_update_of_missing_remote_file_uploads_again(
        self, make_executor, fake_drive, store
    ):
        """Test UpdateContent on a file deleted remotely falls back to an upload."""
        store.put(
            RemoteMapping(
                path="a.txt", remote_id="gone", parent_id="container", fingerprint="old"
            )
        )
        new_fp = content_fingerprint(b"hello")

        summary = make_executor().execute(
            SyncPlan([Operation.update_content("a.txt", "gone", new_fp, size=5)])
        )

        assert summary.succeeded
        assert summary.count(OperationKind.UPDATE_CONTENT) == 1
        mapping = store.get("a.txt")
        assert mapping.remote_id != "gone"
        assert mapping.fingerprint == new_fp
        assert fake_drive.tree("container") == {"a.txt": b"hello"}

    def test_unknown_parent_folder_is_blocked(self, make_executor, fake_drive):
        """Test an operation whose parent folder has no remote ID."""
        summary = make_executor().execute(SyncPlan([upload("docs/c.txt", b"charlie")]))

        assert [op.path for op in summary.blocked] == ["docs/c.txt"]
        assert fake_drive.calls == []

    def test_fatal_error_cancels_remaining(self, make_executor, fake_drive, store):
        """Test an authorization failure stops dispatching new operations."""
        fake_drive.fail("upload_file", "a.txt", AuthError("token revoked"))
        plan = SyncPlan(
            [
                upload("a.txt", b"hello"),
                upload("b.txt", b"bravo"),
                Operation.create_folder("docs"),
            ]
        )

        summary = make_executor(max_workers=1).execute(plan)

        assert summary.aborted
        assert isinstance(summary.fatal_error, AuthError)
        assert summary.failed[0].category is ErrorCategory.FATAL
        assert {op.path for op in summary.cancelled} == {"b.txt", "docs"}
        assert fake_drive.calls == [("upload_file", "a.txt")]
        assert len(store) == 0

    def test_fatal_error_does_not_retry(self, make_executor, fake_drive, sleeps):
        """Test quota exhaustion is not retried."""
        fake_drive.fail("upload_file", "a.txt", QuotaExceededError("full", 403))

        summary = make_executor().execute(SyncPlan([upload("a.txt", b"hello")]))

        assert summary.aborted
        assert sleeps == []

    def test_state_write_failure_is_fatal(self, fake_drive, tmp_path, local_root, sleeps):
        """Test a failed state write aborts the run."""
        closed = StateStore(tmp_path / "closed.db")
        closed.close()
        executor = PlanExecutor(
            fake_drive, closed, local_root, "container", max_workers=1, sleep=sleeps.append
        )

        summary = executor.execute(
            SyncPlan([upload("a.txt", b"hello"), upload("b.txt", b"bravo")])
        )

        assert summary.aborted
        assert isinstance(summary.fatal_error, StateStoreError)
        assert [op.path for op in summary.cancelled] == ["b.txt"]

    def test_cancel_before_execute(self, make_executor, fake_drive):
        """Test an externally cancelled executor starts nothing."""
        executor = make_executor()
        executor.cancel()

        summary = executor.execute(SyncPlan([upload("a.txt", b"hello")]))

        assert executor.cancelled
        assert [op.path for op in summary.cancelled] == ["a.txt"]
        assert fake_drive.calls == []
