"""Reconciliation of local state against stored remote mappings."""

import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import Optional

from .operations import Operation, OperationKind, SyncPlan
from .scanner import LocalEntry
from .state import RemoteMapping

logger = logging.getLogger(__name__)


def _is_within(path: str, roots: set[str]) -> bool:
    """Check whether ``path`` equals or lies below one of ``roots``."""
    if path in roots:
        return True
    parts = path.split("/")
    for i in range(1, len(parts)):
        if "/".join(parts[:i]) in roots:
            return True
    return False


class Reconciler:
    """Compares local entries with stored mappings to produce a SyncPlan.

    Local state is authoritative. A file changed only on the remote side is
    overwritten on the next sync that sees a local change, and remote objects
    whose local path disappeared are deleted.
    """

    def reconcile(
        self,
        local_entries: Iterable[LocalEntry],
        stored_mappings: Iterable[RemoteMapping],
        unreadable_paths: Optional[Iterable[str]] = None,
    ) -> SyncPlan:
        """Compute the operations needed to mirror local state remotely.

        Args:
            local_entries: Current (non-ignored) local files and directories
            stored_mappings: Mappings recorded by previous runs
            unreadable_paths: Paths the scanner had to skip; no Delete is
                produced for them or anything below them

        Returns:
            Ordered SyncPlan (empty when everything is in sync)
        """
        local_map = {entry.relative_path: entry for entry in local_entries}
        stored_map = {mapping.path: mapping for mapping in stored_mappings}
        protected = set(unreadable_paths or ())

        creates: list[Operation] = []
        deletes: list[Operation] = []

        for path in sorted(local_map):
            entry = local_map[path]
            mapping = stored_map.get(path)

            if mapping is not None and mapping.is_folder != entry.is_dir:
                # The path switched between file and directory: remove the
                # old object and create the new one from scratch
                logger.debug(f"Kind changed for {path}, replacing remote object")
                deletes.append(
                    Operation.delete(mapping.remote_id, path, is_folder=mapping.is_folder)
                )
                mapping = None

            if mapping is None:
                if entry.is_dir:
                    creates.append(Operation.create_folder(path, mtime=entry.mtime))
                else:
                    creates.append(
                        Operation.upload_new(
                            path,
                            fingerprint=entry.fingerprint or "",
                            size=entry.size,
                            mtime=entry.mtime,
                        )
                    )
                continue

            if entry.is_dir:
                continue

            if entry.fingerprint != mapping.fingerprint:
                creates.append(
                    Operation.update_content(
                        path,
                        remote_id=mapping.remote_id,
                        fingerprint=entry.fingerprint or "",
                        size=entry.size,
                        mtime=entry.mtime,
                    )
                )

        for path in sorted(stored_map):
            if path in local_map:
                continue
            if protected and _is_within(path, protected):
                logger.debug(f"Not deleting unreadable path: {path}")
                continue
            mapping = stored_map[path]
            deletes.append(
                Operation.delete(mapping.remote_id, path, is_folder=mapping.is_folder)
            )

        plan = self._order(creates, deletes)
        logger.debug(
            f"Reconciled {len(local_map)} local entries against "
            f"{len(stored_map)} mappings: {len(plan)} operation(s)"
        )
        return plan

    def _order(self, creates: list[Operation], deletes: list[Operation]) -> SyncPlan:
        """Sort operations and attach their dependency indices.

        Deletes come first, deepest paths first, so children are removed
        before their folders. Creates and updates follow, shallowest first,
        so folders exist before anything is placed in them.
        """
        deletes = sorted(deletes, key=lambda op: (-op.depth, op.path))
        creates = sorted(creates, key=lambda op: (op.depth, op.path))
        ordered = deletes + creates

        delete_index: dict[str, int] = {}
        folder_create_index: dict[str, int] = {}
        children_deletes: dict[str, list[int]] = {}

        for index, op in enumerate(ordered):
            if op.kind is OperationKind.DELETE:
                delete_index[op.path] = index
                children_deletes.setdefault(op.parent_path, []).append(index)
            elif op.kind is OperationKind.CREATE_FOLDER:
                folder_create_index[op.path] = index

        operations: list[Operation] = []
        for index, op in enumerate(ordered):
            depends_on: list[int] = []
            if op.kind is OperationKind.DELETE:
                if op.is_folder:
                    depends_on.extend(children_deletes.get(op.path, []))
            else:
                parent_index = folder_create_index.get(op.parent_path)
                if parent_index is not None:
                    depends_on.append(parent_index)
                if op.path in delete_index:
                    depends_on.append(delete_index[op.path])
            operations.append(replace(op, depends_on=tuple(sorted(depends_on))))

        plan = SyncPlan(operations)
        plan.validate()
        return plan
