"""Directory scanning utilities for sync operations."""

import logging
import os
import stat as stat_module
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..exceptions import ScanError
from ..utils import file_fingerprint
from .ignore import PatternMatcher
from .state import RemoteMapping

logger = logging.getLogger(__name__)


class EntryKind(str, Enum):
    """Kind of a local entry."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class LocalEntry:
    """Represents a local file or directory with metadata."""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    kind: EntryKind
    """Whether this is a file or a directory"""

    size: int = 0
    """File size in bytes (0 for directories)"""

    mtime: float = 0.0
    """Last modification time (Unix timestamp)"""

    fingerprint: Optional[str] = None
    """Content fingerprint (None for directories)"""

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def name(self) -> str:
        return self.relative_path.rsplit("/", 1)[-1]

    @property
    def depth(self) -> int:
        """Number of path components (1 for top-level entries)."""
        return self.relative_path.count("/") + 1


MappingLookup = Callable[[str], Optional[RemoteMapping]]


class DirectoryScanner:
    """Scans a local directory tree into a set of LocalEntry objects.

    Ignore files (``.gitignore`` by default) are loaded from every directory
    that is entered and applied hierarchically: rules from a parent apply to
    all descendants, rules from a subdirectory only inside that subtree.
    Ignored directories are never opened.

    Fingerprints are only computed when needed: if a previously synced file
    still has the recorded size and modification time, the recorded
    fingerprint is reused instead of hashing the file again.

    Examples:
        >>> scanner = DirectoryScanner()
        >>> entries = scanner.scan(Path("/home/user/documents"))  # doctest: +SKIP
        >>> for error in scanner.errors:  # doctest: +SKIP
        ...     print(error.path, error.reason)
    """

    def __init__(
        self,
        matcher: Optional[PatternMatcher] = None,
        lookup: Optional[MappingLookup] = None,
        hasher: Callable[[Path], str] = file_fingerprint,
    ):
        """Initialize directory scanner.

        Args:
            matcher: Pattern matcher used to exclude paths
            lookup: Returns the stored RemoteMapping for a relative path,
                used to reuse fingerprints of unchanged files
            hasher: Function computing the fingerprint of a file
        """
        self.matcher = matcher or PatternMatcher()
        self.lookup = lookup
        self.hasher = hasher
        self.errors: list[ScanError] = []
        self.hashed_files = 0
        self.reused_fingerprints = 0

    @property
    def unreadable_paths(self) -> set[str]:
        """Relative paths that were skipped because of scan errors."""
        return {error.path for error in self.errors}

    def scan(self, root: Path) -> set[LocalEntry]:
        """Recursively scan a local directory.

        Args:
            root: Directory to scan

        Returns:
            Set of LocalEntry objects for every non-ignored file and directory
            below ``root`` (the root itself is not included)

        Raises:
            ScanError: If the root directory cannot be read
        """
        self.errors = []
        self.hashed_files = 0
        self.reused_fingerprints = 0

        try:
            root_stat = root.stat()
        except OSError as e:
            raise ScanError(str(root), e.strerror or str(e)) from e
        if not stat_module.S_ISDIR(root_stat.st_mode):
            raise ScanError(str(root), "not a directory")

        try:
            children = self._list_directory(root)
            layer = self.matcher.load_layer(root, "")
        except OSError as e:
            raise ScanError(str(root), e.strerror or str(e)) from e

        entries: set[LocalEntry] = set()
        with self.matcher.layer(layer):
            self._scan_children(root, "", children, entries)

        logger.debug(
            f"Scanned {len(entries)} entries in {root} "
            f"({self.hashed_files} hashed, {self.reused_fingerprints} reused, "
            f"{len(self.errors)} error(s))"
        )
        return entries

    def _list_directory(self, directory: Path) -> list[os.DirEntry]:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda e: e.name)

    def _scan_children(
        self,
        directory: Path,
        relative_dir: str,
        children: list[os.DirEntry],
        entries: set[LocalEntry],
    ) -> None:
        for child in children:
            relative_path = f"{relative_dir}/{child.name}" if relative_dir else child.name

            try:
                is_dir = child.is_dir(follow_symlinks=False)
                is_link = child.is_symlink()
            except OSError as e:
                self._record_error(relative_path, e)
                continue

            if is_dir:
                if self.matcher.is_ignored(relative_path, is_dir=True):
                    logger.debug(f"Ignoring directory (from rules): {relative_path}")
                    continue
                self._scan_directory(Path(child.path), relative_path, entries)
                continue

            if is_link:
                try:
                    target_is_dir = child.is_dir(follow_symlinks=True)
                except OSError as e:
                    self._record_error(relative_path, e)
                    continue
                if target_is_dir:
                    logger.debug(f"Not following directory symlink: {relative_path}")
                    continue

            if self.matcher.is_ignored(relative_path, is_dir=False):
                logger.debug(f"Ignoring (from rules): {relative_path}")
                continue

            entry = self._build_file_entry(Path(child.path), relative_path)
            if entry is not None:
                entries.add(entry)

    def _scan_directory(
        self, directory: Path, relative_path: str, entries: set[LocalEntry]
    ) -> None:
        try:
            dir_stat = directory.stat()
            children = self._list_directory(directory)
            # An unreadable ignore file makes the whole subtree unreadable
            layer = self.matcher.load_layer(directory, relative_path)
        except OSError as e:
            self._record_error(relative_path, e)
            return

        entries.add(
            LocalEntry(
                relative_path=relative_path,
                kind=EntryKind.DIRECTORY,
                mtime=dir_stat.st_mtime,
            )
        )

        with self.matcher.layer(layer):
            self._scan_children(directory, relative_path, children, entries)

    def _build_file_entry(self, path: Path, relative_path: str) -> Optional[LocalEntry]:
        try:
            # Follows symlinks; a broken link raises FileNotFoundError here
            file_stat = path.stat()
        except FileNotFoundError as e:
            reason = "broken symlink" if path.is_symlink() else (e.strerror or str(e))
            self._record_error(relative_path, reason)
            return None
        except OSError as e:
            self._record_error(relative_path, e)
            return None

        if not stat_module.S_ISREG(file_stat.st_mode):
            logger.debug(f"Skipping special file: {relative_path}")
            return None

        size = file_stat.st_size
        mtime = file_stat.st_mtime

        fingerprint = self._reuse_fingerprint(relative_path, size, mtime)
        if fingerprint is None:
            try:
                fingerprint = self.hasher(path)
            except OSError as e:
                self._record_error(relative_path, e)
                return None
            self.hashed_files += 1
        else:
            self.reused_fingerprints += 1

        return LocalEntry(
            relative_path=relative_path,
            kind=EntryKind.FILE,
            size=size,
            mtime=mtime,
            fingerprint=fingerprint,
        )

    def _reuse_fingerprint(
        self, relative_path: str, size: int, mtime: float
    ) -> Optional[str]:
        """Return the stored fingerprint if the file looks unchanged."""
        if self.lookup is None:
            return None
        mapping = self.lookup(relative_path)
        if mapping is None or mapping.is_folder or not mapping.fingerprint:
            return None
        if mapping.size == size and mapping.mtime == mtime:
            return mapping.fingerprint
        return None

    def _record_error(self, relative_path: str, error: object) -> None:
        if isinstance(error, OSError):
            reason = error.strerror or str(error)
        else:
            reason = str(error)
        scan_error = ScanError(relative_path, reason)
        logger.warning(str(scan_error))
        self.errors.append(scan_error)
