"""Shared fixtures for the PyGSync tests."""

import itertools
import threading
from pathlib import Path
from typing import BinaryIO, Optional

import pytest

from pygsync.exceptions import NotFoundError
from pygsync.output import OutputFormatter
from pygsync.sync.state import StateStore


class FakeDrive:
    """In-memory storage client with scripted failures.

    Failures are queued per (method, object name) with :meth:`fail` and raised
    one per call before the call has any effect. Failures queued with
    :meth:`fail_after_commit` are raised after the call took effect, like a
    response lost on the way back.
    """

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._late_failures: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, method: str, name: str, *errors: BaseException) -> None:
        self._failures.setdefault((method, name), []).extend(errors)

    def fail_after_commit(self, method: str, name: str, *errors: BaseException) -> None:
        self._late_failures.setdefault((method, name), []).extend(errors)

    def _check_late_failure(self, method: str, name: str) -> None:
        queue = self._late_failures.get((method, name))
        if queue:
            raise queue.pop(0)

    def _check_failure(self, method: str, name: str) -> None:
        self.calls.append((method, name))
        queue = self._failures.get((method, name))
        if queue:
            raise queue.pop(0)

    def create_folder(self, parent_id: str, name: str) -> str:
        with self._lock:
            self._check_failure("create_folder", name)
            remote_id = f"id-{next(self._ids)}"
            self.objects[remote_id] = {"name": name, "parent": parent_id, "folder": True}
            self._check_late_failure("create_folder", name)
            return remote_id

    def upload_file(
        self, parent_id: str, name: str, stream: BinaryIO, fingerprint: str
    ) -> str:
        content = stream.read()
        with self._lock:
            self._check_failure("upload_file", name)
            remote_id = f"id-{next(self._ids)}"
            self.objects[remote_id] = {
                "name": name,
                "parent": parent_id,
                "folder": False,
                "content": content,
                "fingerprint": fingerprint,
            }
            self._check_late_failure("upload_file", name)
            return remote_id

    def update_file(self, remote_id: str, stream: BinaryIO, fingerprint: str) -> None:
        content = stream.read()
        with self._lock:
            name = self.objects.get(remote_id, {}).get("name", remote_id)
            self._check_failure("update_file", name)
            if remote_id not in self.objects:
                raise NotFoundError(f"File not found: {remote_id}", 404)
            self.objects[remote_id]["content"] = content
            self.objects[remote_id]["fingerprint"] = fingerprint

    def delete_object(self, remote_id: str) -> None:
        with self._lock:
            name = self.objects.get(remote_id, {}).get("name", remote_id)
            self._check_failure("delete_object", name)
            if remote_id not in self.objects:
                raise NotFoundError(f"File not found: {remote_id}", 404)
            del self.objects[remote_id]

    def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        with self._lock:
            self._check_failure("find_folder", name)
            for remote_id, obj in self.objects.items():
                if obj["folder"] and obj["name"] == name and obj["parent"] == parent_id:
                    return remote_id
            return None

    def find_file(self, name: str, parent_id: str, fingerprint: str) -> Optional[str]:
        with self._lock:
            self._check_failure("find_file", name)
            for remote_id, obj in self.objects.items():
                if (
                    not obj["folder"]
                    and obj["name"] == name
                    and obj["parent"] == parent_id
                    and obj["fingerprint"] == fingerprint
                ):
                    return remote_id
            return None

    def tree(self, root_id: str) -> dict[str, Optional[bytes]]:
        """Return {relative path: content} below a folder (None for folders)."""
        result: dict[str, Optional[bytes]] = {}

        def walk(parent_id: str, prefix: str) -> None:
            for remote_id, obj in list(self.objects.items()):
                if obj["parent"] != parent_id:
                    continue
                path = f"{prefix}{obj['name']}"
                if obj["folder"]:
                    result[path] = None
                    walk(remote_id, f"{path}/")
                else:
                    result[path] = obj["content"]

        walk(root_id, "")
        return result


@pytest.fixture
def fake_drive():
    """Provide an in-memory storage client."""
    return FakeDrive()


@pytest.fixture
def store(tmp_path: Path):
    """Provide a state store in a temporary directory."""
    state = StateStore(tmp_path / "state" / "test.db")
    yield state
    state.close()


@pytest.fixture
def quiet_output():
    """Output formatter that prints nothing but errors."""
    return OutputFormatter(quiet=True)
