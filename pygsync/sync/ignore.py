"""Gitignore-style pattern matching for sync operations.

Ignore files are read from every directory the scanner enters. Each file is
compiled into a :class:`PatternLayer` that is pushed onto the matcher's stack
while the directory is being scanned and popped again when the scanner leaves
it. A path is ignored when the last rule that matches it, searching all active
layers from the root to the current directory, is not negated.

Supported syntax:
    - ``*`` matches anything except ``/``
    - ``?`` matches a single character except ``/``
    - ``[abc]``, ``[a-z]``, ``[!abc]`` character classes
    - ``**`` matches across directories (``**/foo``, ``foo/**``, ``a/**/b``)
    - a trailing ``/`` only matches directories
    - a leading ``!`` re-includes a previously excluded path
    - a leading ``/`` or a ``/`` in the middle anchors the pattern to the
      directory of the ignore file
    - ``#`` starts a comment, ``\\#`` and ``\\!`` escape those characters
"""

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..utils import DEFAULT_IGNORE_FILE_NAME

logger = logging.getLogger(__name__)


def _translate_glob(pattern: str) -> str:
    """Translate a gitignore glob into a regular expression body.

    Args:
        pattern: Glob without negation, anchoring slash or trailing slash

    Returns:
        Regular expression source (without anchors)
    """
    parts: list[str] = []
    i, n = 0, len(pattern)

    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern[i : i + 2] == "**":
                j = i + 2
                at_segment_start = i == 0 or pattern[i - 1] == "/"
                at_segment_end = j == n or pattern[j] == "/"
                if at_segment_start and at_segment_end:
                    if j == n:
                        # "foo/**" or a bare "**": everything below
                        parts.append(".*")
                        i = j
                    else:
                        # "**/" matches zero or more directories
                        parts.append("(?:.*/)?")
                        i = j + 1
                    continue
                # "**" inside a segment behaves like "*"
                parts.append("[^/]*")
                i = j
                continue
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                # Unterminated class is a literal bracket
                parts.append(re.escape(c))
            else:
                body = pattern[i + 1 : j]
                negate = body[:1] in ("!", "^")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\").replace("[", "\\[")
                parts.append(f"(?!/)[{'^' if negate else ''}{body}]")
                i = j
        elif c == "\\" and i + 1 < n:
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            parts.append(re.escape(c))
        i += 1

    return "".join(parts)


@dataclass
class IgnoreRule:
    """A single compiled ignore rule."""

    pattern: str
    """Original pattern text as written in the ignore file"""

    negated: bool = False
    """Whether the rule re-includes matching paths (leading ``!``)"""

    directory_only: bool = False
    """Whether the rule only matches directories (trailing ``/``)"""

    anchored: bool = False
    """Whether the rule is relative to the ignore file's directory"""

    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        body = _translate_glob(self.pattern)
        if not self.anchored:
            body = "(?:.*/)?" + body
        self.regex = re.compile(body, re.DOTALL)

    @classmethod
    def parse(cls, line: str) -> Optional["IgnoreRule"]:
        """Parse one line of an ignore file.

        Args:
            line: Raw line from the ignore file

        Returns:
            IgnoreRule, or None for blank lines and comments

        Examples:
            >>> IgnoreRule.parse("# comment") is None
            True
            >>> rule = IgnoreRule.parse("!build/")
            >>> rule.negated, rule.directory_only, rule.pattern
            (True, True, 'build')
        """
        line = line.rstrip("\n").rstrip("\r")

        # Trailing spaces are ignored unless escaped
        stripped = line.rstrip(" ")
        if stripped.endswith("\\") and len(stripped) < len(line):
            stripped += " "
        line = stripped

        if not line or line.startswith("#"):
            return None

        negated = False
        if line.startswith("!"):
            negated = True
            line = line[1:]
        elif line.startswith("\\!") or line.startswith("\\#"):
            line = line[1:]

        directory_only = False
        if line.endswith("/") and not line.endswith("\\/"):
            directory_only = True
            line = line.rstrip("/")

        anchored = False
        if line.startswith("/"):
            anchored = True
            line = line.lstrip("/")
        elif "/" in line:
            anchored = True

        if not line:
            return None

        return cls(
            pattern=line,
            negated=negated,
            directory_only=directory_only,
            anchored=anchored,
        )

    def matches(self, relative_path: str, is_dir: bool) -> bool:
        """Check whether this rule matches a path.

        Args:
            relative_path: Path relative to the directory of the rule's layer
            is_dir: Whether the path is a directory

        Returns:
            True if the rule matches
        """
        if self.directory_only and not is_dir:
            return False
        return self.regex.fullmatch(relative_path) is not None


@dataclass
class PatternLayer:
    """Ordered rules of a single ignore file, scoped to one directory."""

    base: str
    """Directory the rules apply to, relative to the scan root ("" for root)"""

    rules: list[IgnoreRule] = field(default_factory=list)

    source: Optional[str] = None
    """Where the rules came from (for debug output)"""

    @classmethod
    def from_text(
        cls, text: str, base: str = "", source: Optional[str] = None
    ) -> "PatternLayer":
        """Compile the text of an ignore file into a layer.

        Rules that cannot be compiled (e.g. a reversed range like ``[z-a]``)
        never match and are dropped with a warning.
        """
        rules = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            try:
                rule = IgnoreRule.parse(line)
            except re.error as e:
                logger.warning(
                    f"Skipping invalid ignore rule {line.strip()!r} "
                    f"({source or '<text>'}:{line_number}): {e}"
                )
                continue
            if rule is not None:
                rules.append(rule)
        return cls(base=base, rules=rules, source=source)

    @classmethod
    def from_patterns(cls, patterns: list[str], base: str = "") -> "PatternLayer":
        """Compile a list of patterns (e.g. from the command line) into a layer."""
        return cls.from_text("\n".join(patterns), base=base, source="<patterns>")

    def relative_to_base(self, relative_path: str) -> Optional[str]:
        """Return the path relative to this layer's base, or None if outside it."""
        if not self.base:
            return relative_path
        prefix = self.base + "/"
        if relative_path.startswith(prefix):
            return relative_path[len(prefix) :]
        return None

    def match(self, relative_path: str, is_dir: bool) -> Optional[bool]:
        """Evaluate this layer for a path.

        Args:
            relative_path: Path relative to the scan root
            is_dir: Whether the path is a directory

        Returns:
            True if the last matching rule excludes the path, False if it
            re-includes it, None if no rule of this layer matches
        """
        local_path = self.relative_to_base(relative_path)
        if local_path is None:
            return None

        for rule in reversed(self.rules):
            if rule.matches(local_path, is_dir):
                return not rule.negated
        return None

    def __len__(self) -> int:
        return len(self.rules)


class IgnoreFileReader:
    """Reads the raw ignore-rule text for a directory."""

    def __init__(self, file_name: str = DEFAULT_IGNORE_FILE_NAME):
        self.file_name = file_name

    def read(self, directory: Path) -> Optional[str]:
        """Return the content of the ignore file in ``directory``, if present.

        Raises:
            OSError: If the ignore file exists but cannot be read
        """
        ignore_file = directory / self.file_name
        try:
            return ignore_file.read_text(encoding="utf-8", errors="replace")
        except (FileNotFoundError, IsADirectoryError):
            return None


class PatternMatcher:
    """Answers inclusion queries against a stack of pattern layers.

    Examples:
        >>> matcher = PatternMatcher(global_patterns=["*.log"])
        >>> matcher.is_ignored("debug.log", is_dir=False)
        True
        >>> with matcher.layer(PatternLayer.from_text("!keep.log", base="sub")):
        ...     matcher.is_ignored("sub/keep.log", is_dir=False)
        False
    """

    def __init__(
        self,
        reader: Optional[IgnoreFileReader] = None,
        global_patterns: Optional[list[str]] = None,
    ):
        """Initialize the pattern matcher.

        Args:
            reader: Source of ignore files (defaults to ``.gitignore`` files)
            global_patterns: Patterns applied below every ignore file,
                relative to the scan root
        """
        self.reader = reader or IgnoreFileReader()
        self._stack: list[PatternLayer] = []
        if global_patterns:
            self._stack.append(PatternLayer.from_patterns(global_patterns))

    @property
    def depth(self) -> int:
        """Number of active layers."""
        return len(self._stack)

    @property
    def layers(self) -> tuple[PatternLayer, ...]:
        return tuple(self._stack)

    @contextmanager
    def layer(self, layer: Optional[PatternLayer]) -> Iterator[Optional[PatternLayer]]:
        """Activate a layer for the duration of the ``with`` block.

        The layer is removed again when the block exits, including on
        exceptions. Passing None (or an empty layer) is a no-op.
        """
        if not layer:
            yield layer
            return

        self._stack.append(layer)
        try:
            yield layer
        finally:
            popped = self._stack.pop()
            if popped is not layer:
                raise RuntimeError("pattern layers released out of order")

    def load_layer(self, directory: Path, relative_dir: str) -> Optional[PatternLayer]:
        """Compile the ignore file of ``directory`` without activating it.

        Args:
            directory: Absolute path of the directory
            relative_dir: Same directory relative to the scan root ("" for root)

        Returns:
            The compiled layer, or None if the directory has no ignore file

        Raises:
            OSError: If the ignore file exists but cannot be read
        """
        text = self.reader.read(directory)
        if text is None:
            return None
        layer = PatternLayer.from_text(
            text,
            base=relative_dir,
            source=str(directory / self.reader.file_name),
        )
        logger.debug(f"Loaded {len(layer)} ignore rule(s) from {layer.source}")
        return layer

    @contextmanager
    def directory(
        self, directory: Path, relative_dir: str
    ) -> Iterator[Optional[PatternLayer]]:
        """Load the ignore file of ``directory`` and activate it.

        Args:
            directory: Absolute path of the directory being entered
            relative_dir: Same directory relative to the scan root ("" for root)
        """
        with self.layer(self.load_layer(directory, relative_dir)) as active:
            yield active

    def is_ignored(self, relative_path: str, is_dir: bool) -> bool:
        """Check whether a path is excluded by the active layers.

        Args:
            relative_path: Slash separated path relative to the scan root
            is_dir: Whether the path is a directory

        Returns:
            True if the last matching rule across all layers is not negated
        """
        for layer in reversed(self._stack):
            result = layer.match(relative_path, is_dir)
            if result is not None:
                return result
        return False
