#!/usr/bin/env python3
"""
LLM Doc - Project File Companion for LLMs

Appends selected files and directories of a workspace to one flat text
document, each framed with its name and relative path, and keeps an
optional "project overview" header block (metadata + ASCII tree) at the
top of that document.

Architecture:
    CLI Args → Settings → Path Filter → Collection → Content Reading →
    Binary Check → Overview Rendering → Document Composition → Output
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import signal
import stat
import sys
import threading
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

import gitignore_parser
import pyperclip

# =============================================================================
# VERSION MANAGEMENT
# =============================================================================

__version__ = "1.2.0"

logger = logging.getLogger("llmdoc")


def get_version() -> str:
    """Get version from package metadata or fallback to hardcoded."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("llm-file-companion")
    except PackageNotFoundError:
        return __version__


# =============================================================================
# CONSTANTS
# =============================================================================

OVERVIEW_START = "--- PROJECT OVERVIEW START ---"
OVERVIEW_END = "--- PROJECT OVERVIEW END ---"

FILE_START = "--- START FILE ---"
FILE_CONTENT = "--- FILE CONTENT ---"
FILE_END = "--- END FILE ---"

VCS_IGNORE_FILE = ".gitignore"
TOOL_IGNORE_FILE = ".llmignore"
SETTINGS_FILE = ".llmdoc.toml"


class Defaults:
    """Default configuration values."""
    OUTPUT_PATH = "LLM_doc.txt"
    TREE_MAX_DEPTH = 3
    TREE_MAX_ENTRIES = 30
    EXCLUDED_DIRECTORIES: Tuple[str, ...] = (
        "node_modules", ".git", ".vscode", "out", ".venv", "dist", "build",
        "__pycache__", ".idea", ".cache", ".next", ".turbo", ".DS_Store",
    )


class Limits:
    """Hard limits that hold regardless of configuration."""
    # Up to 10% control characters is still treated as text
    BINARY_THRESHOLD = 0.1
    MAX_RECURSION_DEPTH = 200
    HISTOGRAM_ROWS = 8


NO_EXTENSION = "(no extension)"
TEXT_CONTROL_CHARS: frozenset = frozenset({"\n", "\r", "\t"})

# Tree display glyphs
GLYPH_CHILD = "├──"
GLYPH_LAST = "└──"
GLYPH_PIPE = "│   "
GLYPH_SPACE = "    "


# =============================================================================
# ERRORS
# =============================================================================

class LLMDocError(Exception):
    """Base class for all llmdoc errors."""


class UserInputError(LLMDocError):
    """The invocation cannot start: no workspace, nothing selectable."""


class TraversalError(LLMDocError):
    """A single directory could not be listed or a file could not be read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason

    def diagnostic(self, kind: str) -> Diagnostic:
        return Diagnostic(kind=kind, path=self.path, message=self.reason)


class Cancelled(LLMDocError):
    """Raised when the caller asked to abort the running operation."""


# =============================================================================
# ENUMS AND DATA MODELS
# =============================================================================

class ExclusionSource(Enum):
    """Which ignore tier excluded a path. Values are the ignore file names."""
    VCS_IGNORE = VCS_IGNORE_FILE
    TOOL_IGNORE = TOOL_IGNORE_FILE


class TemplateMode(Enum):
    """Sections rendered into the overview block."""
    FULL = "full"
    METADATA_ONLY = "metadataOnly"
    TREE_ONLY = "treeOnly"
    SUMMARY = "summary"

    @property
    def shows_metadata(self) -> bool:
        return self is not TemplateMode.TREE_ONLY

    @property
    def shows_tree(self) -> bool:
        return self in (TemplateMode.FULL, TemplateMode.TREE_ONLY)


class EntryKind(Enum):
    """Filesystem entry classification, symlinks not followed."""
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK_DIRECTORY = "symlink-directory"
    OTHER = "other"


@dataclass(frozen=True)
class Diagnostic:
    """A recoverable problem met during traversal."""
    kind: str
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.path}: {self.message}"


@dataclass(frozen=True)
class Settings:
    """Typed settings for one invocation. Defaults mirror the settings store."""
    overview_enabled: bool = True
    include_metadata: bool = True
    include_tree: bool = True
    tree_max_depth: int = Defaults.TREE_MAX_DEPTH
    tree_max_entries: int = Defaults.TREE_MAX_ENTRIES
    excluded_directories: Tuple[str, ...] = Defaults.EXCLUDED_DIRECTORIES
    template: TemplateMode = TemplateMode.FULL
    output_path: str = Defaults.OUTPUT_PATH

    @property
    def shows_metadata(self) -> bool:
        return self.include_metadata and self.template.shows_metadata

    @property
    def shows_tree(self) -> bool:
        return self.include_tree and self.template.shows_tree

    def output_document(self, root: Path) -> Path:
        """Absolute output paths are used verbatim, others hang off the root."""
        path = Path(self.output_path)
        if path.is_absolute():
            return path
        return Path(root) / path

    @classmethod
    def from_store(cls, store: SettingsStore) -> Settings:
        """Read every known option from the store, once."""
        values: Dict[str, Any] = {}
        for key, (attr, check) in SETTING_KEYS.items():
            raw = store.get(key)
            if raw is None:
                continue
            value = check(raw)
            if value is None:
                logger.warning(
                    f"Invalid value for '{key}': {raw!r}. Using default."
                )
                continue
            values[attr] = value
        return cls(**values)


@dataclass(frozen=True)
class TreeOptions:
    """Bounds for the overview tree. Zero or negative means unlimited."""
    max_depth: int = Defaults.TREE_MAX_DEPTH
    max_entries: int = Defaults.TREE_MAX_ENTRIES
    excluded_names: Tuple[str, ...] = Defaults.EXCLUDED_DIRECTORIES

    @classmethod
    def from_settings(cls, settings: Settings) -> TreeOptions:
        return cls(
            max_depth=settings.tree_max_depth,
            max_entries=settings.tree_max_entries,
            excluded_names=tuple(settings.excluded_directories),
        )


@dataclass
class SelectionStats:
    """What happened to one selection root."""
    path: str
    kind: str = "pending"
    files_added: int = 0
    directories_touched: int = 0


@dataclass
class CollectionResult:
    """Unique file paths gathered from the selection roots."""
    files: List[str] = field(default_factory=list)
    selections: List[SelectionStats] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    _seen: Set[str] = field(default_factory=set, repr=False)

    @property
    def directories_touched(self) -> int:
        return sum(s.directories_touched for s in self.selections)

    def add(self, path: str) -> bool:
        """Add a file unless an equivalent path is already present."""
        key = path_key(path)
        if key in self._seen:
            return False
        self._seen.add(key)
        self.files.append(path)
        return True


@dataclass
class TreeResult:
    """Rendered tree lines plus running counters."""
    lines: List[str] = field(default_factory=list)
    file_count: int = 0
    # The root itself is always counted
    directory_count: int = 1
    extension_counts: Dict[str, int] = field(default_factory=dict)
    excluded_entries: int = 0
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def count_file(self, name: str) -> None:
        self.file_count += 1
        ext = os.path.splitext(name)[1].lower() or NO_EXTENSION
        self.extension_counts[ext] = self.extension_counts.get(ext, 0) + 1


@dataclass
class RunResult:
    """Outcome of one append or refresh invocation."""
    document: Path
    written: bool = False
    appended: int = 0
    binary_skipped: int = 0
    unreadable: int = 0
    overview: bool = False
    excluded: Dict[ExclusionSource, int] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    message: str = ""

    def summary_line(self) -> str:
        """Single human readable line summarising the run."""
        parts = [f"Appended {self.appended} file(s) to {self.document.name}"]
        if self.overview:
            parts[0] += " (overview refreshed)"
        parts.append(
            f"skipped {self.binary_skipped} binary, {self.unreadable} unreadable"
        )
        excluded = ", ".join(
            f"{self.excluded.get(source, 0)} by {source.value}"
            for source in ExclusionSource
        )
        parts.append(f"excluded {excluded}")
        return "; ".join(parts) + "."


# =============================================================================
# CANCELLATION
# =============================================================================

class CancellationToken:
    """Cooperative cancellation flag polled between filesystem operations."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Operation cancelled")


# =============================================================================
# FILESYSTEM PROVIDER
# =============================================================================

class LocalFileSystem:
    """Raw byte access and directory listing on the local disk."""

    def entry_kind(self, path: str) -> EntryKind:
        """Classify a path without following symlinked directories."""
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            if os.path.isdir(path):
                return EntryKind.SYMLINK_DIRECTORY
            if os.path.isfile(path):
                return EntryKind.FILE
            return EntryKind.OTHER
        if stat.S_ISDIR(st.st_mode):
            return EntryKind.DIRECTORY
        if stat.S_ISREG(st.st_mode):
            return EntryKind.FILE
        return EntryKind.OTHER

    def list_dir(self, path: str) -> List[str]:
        """Entry names in filesystem enumeration order."""
        with os.scandir(path) as it:
            return [entry.name for entry in it]

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def read_bytes(self, path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def write_text(self, path: str, content: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)


def path_key(path: str) -> str:
    """Identity of a path for deduplication, case folded where the OS does."""
    return os.path.normcase(os.path.normpath(os.path.abspath(path)))


# =============================================================================
# IGNORE MATCHING
# =============================================================================

def load_ignore_rules(path: Path) -> Tuple[str, ...]:
    """Raw pattern lines of an ignore file. A missing file has no rules."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ()
    except OSError as e:
        logger.warning(f"Could not read {path}: {e}")
        return ()
    return tuple(text.splitlines())


class IgnoreMatcher:
    """Gitignore-style predicate over paths relative to a base directory."""

    def __init__(self, rules: Sequence[Any], base_dir: str):
        self.rules = list(rules)
        self.base_dir = base_dir

    @classmethod
    def from_lines(
        cls,
        lines: Iterable[str],
        base_dir: Path,
        source: str = VCS_IGNORE_FILE,
    ) -> IgnoreMatcher:
        """Compile pattern lines. Blank lines and comments produce no rules."""
        base = os.path.abspath(base_dir)
        source_path = os.path.join(base, source)
        rules = []
        for line_no, line in enumerate(lines, start=1):
            rule = gitignore_parser.rule_from_pattern(
                line.rstrip("\r\n"),
                base_path=base,
                source=(source_path, line_no),
            )
            if rule is not None:
                rules.append(rule)
        return cls(rules, base)

    @classmethod
    def from_file(cls, path: Path, base_dir: Path) -> IgnoreMatcher:
        return cls.from_lines(load_ignore_rules(path), base_dir, Path(path).name)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def matches(self, relative_path: str) -> bool:
        """Check a forward-slash relative path, as a file and as a directory."""
        if not self.rules or not relative_path:
            return False
        probe = os.path.join(self.base_dir, relative_path.rstrip("/"))
        # The trailing slash lets directory-only patterns match without
        # knowing the entry type up front.
        probes = (probe, probe + "/")
        # Last matching rule decides, so negations can re-include a path
        for rule in reversed(self.rules):
            if any(rule.match(p) for p in probes):
                return not rule.negation
        return False


class NameExclusions:
    """Entry-name globs where only '*' is special. Case-insensitive, anchored."""

    def __init__(self, patterns: Iterable[str]):
        self.patterns = tuple(p for p in patterns if p)
        self._regexes = [self._compile(p) for p in self.patterns]

    @staticmethod
    def _compile(pattern: str) -> re.Pattern:
        body = ".*".join(re.escape(part) for part in pattern.split("*"))
        return re.compile(body, re.IGNORECASE | re.DOTALL)

    def matches(self, name: str) -> bool:
        return any(regex.fullmatch(name) for regex in self._regexes)


# =============================================================================
# PATH FILTER
# =============================================================================

class PathFilter:
    """Two-tier ignore filter: .gitignore first, then .llmignore."""

    def __init__(
        self,
        root: Path,
        vcs: Optional[IgnoreMatcher] = None,
        tool: Optional[IgnoreMatcher] = None,
    ):
        self.root = os.path.abspath(root)
        self.vcs = vcs or IgnoreMatcher([], self.root)
        self.tool = tool or IgnoreMatcher([], self.root)
        self.excluded: Dict[ExclusionSource, int] = {
            source: 0 for source in ExclusionSource
        }

    @classmethod
    def for_workspace(cls, root: Path) -> PathFilter:
        """Build the filter from the ignore files at the workspace root."""
        root = Path(root)
        return cls(
            root,
            vcs=IgnoreMatcher.from_file(root / VCS_IGNORE_FILE, root),
            tool=IgnoreMatcher.from_file(root / TOOL_IGNORE_FILE, root),
        )

    def relative(self, path: str) -> Optional[str]:
        """Forward-slash path relative to the root, or None when outside it."""
        try:
            rel = os.path.relpath(os.path.abspath(path), self.root)
        except ValueError:
            # Different drive on Windows
            return None
        rel = rel.replace(os.sep, "/")
        if not rel or rel == "." or rel == ".." or rel.startswith("../"):
            return None
        if os.path.isabs(rel):
            return None
        return rel

    def should_skip(self, path: str) -> Optional[ExclusionSource]:
        """Return the tier that excludes the path, or None to include it."""
        rel = self.relative(path)
        if rel is None:
            return None
        for source, matcher in (
            (ExclusionSource.VCS_IGNORE, self.vcs),
            (ExclusionSource.TOOL_IGNORE, self.tool),
        ):
            if matcher.matches(rel):
                self.excluded[source] += 1
                logger.debug(f"Excluded {rel}: matched {source.value}")
                return source
        return None

    def excluded_counts(self) -> Dict[ExclusionSource, int]:
        return dict(self.excluded)


# =============================================================================
# COLLECTOR
# =============================================================================

class Collector:
    """Expands files and directories into a unique list of file paths."""

    def __init__(
        self,
        path_filter: PathFilter,
        fs: Optional[LocalFileSystem] = None,
        cancel: Optional[CancellationToken] = None,
        skip_paths: Iterable[str] = (),
        excluded_names: Iterable[str] = Defaults.EXCLUDED_DIRECTORIES,
    ):
        self.filter = path_filter
        self.fs = fs or LocalFileSystem()
        self.cancel = cancel or CancellationToken()
        self.skip_keys = {path_key(p) for p in skip_paths}
        self.exclusions = NameExclusions(excluded_names)

    def collect(self, selection_roots: Iterable[str]) -> CollectionResult:
        """Collect files under the roots. Order follows directory enumeration."""
        result = CollectionResult()
        seen_roots: Set[str] = set()

        for root in selection_roots:
            root = os.path.abspath(root)
            key = path_key(root)
            if key in seen_roots:
                continue
            seen_roots.add(key)

            stats = SelectionStats(path=root)
            result.selections.append(stats)

            # Explicit selection does not override ignore rules
            if key in self.skip_keys or self.filter.should_skip(root) is not None:
                stats.kind = "ignored"
                continue

            try:
                kind = self.fs.entry_kind(root)
            except OSError as e:
                stats.kind = "missing"
                result.diagnostics.append(
                    TraversalError(root, e.strerror or str(e)).diagnostic("stat")
                )
                continue

            if kind is EntryKind.FILE:
                stats.kind = "file"
                if result.add(root):
                    stats.files_added += 1
            elif kind in (EntryKind.DIRECTORY, EntryKind.SYMLINK_DIRECTORY):
                stats.kind = "directory"
                self._walk(root, stats, result, depth=0)
            else:
                stats.kind = "unsupported"

        return result

    def _list_dir(self, directory: str) -> List[str]:
        self.cancel.raise_if_cancelled()
        try:
            return self.fs.list_dir(directory)
        except OSError as e:
            raise TraversalError(directory, e.strerror or str(e)) from e

    def _walk(
        self,
        directory: str,
        stats: SelectionStats,
        result: CollectionResult,
        depth: int,
    ) -> None:
        if depth >= Limits.MAX_RECURSION_DEPTH:
            result.diagnostics.append(Diagnostic(
                "depth", directory, "recursion limit reached, not descending",
            ))
            return

        try:
            names = self._list_dir(directory)
        except TraversalError as e:
            logger.debug(f"Cannot list {directory}: {e.reason}")
            result.diagnostics.append(e.diagnostic("list"))
            return
        stats.directories_touched += 1

        for name in names:
            child = os.path.join(directory, name)
            # Pruned before recursing so ignored subtrees are never listed
            if (path_key(child) in self.skip_keys
                    or self.exclusions.matches(name)
                    or self.filter.should_skip(child) is not None):
                continue
            try:
                kind = self.fs.entry_kind(child)
            except OSError as e:
                result.diagnostics.append(
                    TraversalError(child, e.strerror or str(e)).diagnostic("stat")
                )
                continue

            if kind is EntryKind.FILE:
                if result.add(child):
                    stats.files_added += 1
            elif kind is EntryKind.DIRECTORY:
                self._walk(child, stats, result, depth + 1)
            elif kind is EntryKind.SYMLINK_DIRECTORY:
                logger.debug(f"Not following symlinked directory {child}")


# =============================================================================
# TREE BUILDER
# =============================================================================

class TreeBuilder:
    """Bounded, sorted ASCII rendering of one directory tree."""

    def __init__(
        self,
        path_filter: PathFilter,
        options: Optional[TreeOptions] = None,
        fs: Optional[LocalFileSystem] = None,
        cancel: Optional[CancellationToken] = None,
        skip_paths: Iterable[str] = (),
    ):
        self.filter = path_filter
        self.options = options or TreeOptions()
        self.exclusions = NameExclusions(self.options.excluded_names)
        self.fs = fs or LocalFileSystem()
        self.cancel = cancel or CancellationToken()
        self.skip_keys = {path_key(p) for p in skip_paths}

    def build(self, root: Path) -> TreeResult:
        """Render the tree under root and count what passed the filters."""
        root = os.path.abspath(root)
        result = TreeResult()
        result.lines.append(f"{os.path.basename(root) or root}/")
        self._render_dir(root, "", 1, result)
        return result

    def _can_descend(self, depth: int) -> bool:
        if depth >= Limits.MAX_RECURSION_DEPTH:
            return False
        return self.options.max_depth <= 0 or depth < self.options.max_depth

    def _visible_entries(
        self, directory: str, result: TreeResult
    ) -> List[Tuple[str, str, EntryKind]]:
        self.cancel.raise_if_cancelled()
        try:
            names = self.fs.list_dir(directory)
        except OSError as e:
            error = TraversalError(directory, e.strerror or str(e))
            logger.debug(f"Cannot list {directory}: {error.reason}")
            result.diagnostics.append(error.diagnostic("list"))
            return []

        entries = []
        for name in names:
            path = os.path.join(directory, name)
            if path_key(path) in self.skip_keys:
                continue
            if (self.exclusions.matches(name)
                    or self.filter.should_skip(path) is not None):
                result.excluded_entries += 1
                continue
            try:
                kind = self.fs.entry_kind(path)
            except OSError as e:
                result.diagnostics.append(
                    TraversalError(path, e.strerror or str(e)).diagnostic("stat")
                )
                continue
            if kind is EntryKind.OTHER:
                continue
            entries.append((name, path, kind))

        entries.sort(key=lambda entry: entry[0])
        return entries

    def _render_dir(
        self, directory: str, prefix: str, depth: int, result: TreeResult
    ) -> None:
        entries = self._visible_entries(directory, result)

        limit = self.options.max_entries
        visible = entries[:limit] if limit > 0 else entries
        hidden = entries[len(visible):]

        for index, (name, path, kind) in enumerate(visible):
            # The "+N more" line takes the last slot when truncating
            is_last = index == len(visible) - 1 and not hidden
            connector = GLYPH_LAST if is_last else GLYPH_CHILD
            line = f"{prefix}{connector} {name}"

            if kind is EntryKind.FILE:
                result.count_file(name)
                result.lines.append(line)
                continue

            result.directory_count += 1
            if kind is EntryKind.SYMLINK_DIRECTORY:
                result.lines.append(f"{line}/ (symlink, not followed)")
            elif not self._can_descend(depth):
                result.lines.append(f"{line}/ (max depth reached)")
            else:
                result.lines.append(f"{line}/")
                child_prefix = prefix + (GLYPH_SPACE if is_last else GLYPH_PIPE)
                self._render_dir(path, child_prefix, depth + 1, result)

        for name, _, kind in hidden:
            if kind is EntryKind.FILE:
                result.count_file(name)
            else:
                result.directory_count += 1

        if hidden:
            result.lines.append(f"{prefix}{GLYPH_LAST} +{len(hidden)} more item(s)")


# =============================================================================
# CONTENT CLASSIFICATION
# =============================================================================

def decode_text(data: bytes) -> str:
    """Decode file bytes as UTF-8, replacing invalid sequences."""
    return data.decode("utf-8", errors="replace")


def is_binary_content(
    content: str, threshold: float = Limits.BINARY_THRESHOLD
) -> bool:
    """True when more than threshold of the characters are control codes."""
    if not content:
        return False
    control = sum(
        1 for char in content
        if ord(char) < 32 and char not in TEXT_CONTROL_CHARS
    )
    return control / len(content) > threshold


# =============================================================================
# OVERVIEW RENDERER
# =============================================================================

def _now() -> datetime:
    return datetime.now().astimezone()


def format_extension_summary(
    counts: Mapping[str, int], rows: int = Limits.HISTOGRAM_ROWS
) -> List[str]:
    """Extension histogram, most common first, with a trailing overflow row."""
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    lines = ["FILE TYPES:"]
    for ext, count in ranked[:rows]:
        lines.append(f"  {ext}: {count}")
    if len(ranked) > rows:
        lines.append(f"  +{len(ranked) - rows} other extensions")
    return lines


def render_overview(
    root: Path,
    settings: Settings,
    path_filter: PathFilter,
    fs: Optional[LocalFileSystem] = None,
    cancel: Optional[CancellationToken] = None,
    clock: Optional[Callable[[], datetime]] = None,
    skip_paths: Iterable[str] = (),
) -> str:
    """Build the delimited overview block for the workspace root."""
    root = Path(os.path.abspath(root))
    show_metadata = settings.shows_metadata
    show_tree = settings.shows_tree

    tree: Optional[TreeResult] = None
    if show_metadata or show_tree:
        builder = TreeBuilder(
            path_filter,
            TreeOptions.from_settings(settings),
            fs=fs,
            cancel=cancel,
            skip_paths=skip_paths,
        )
        tree = builder.build(root)

    lines = [OVERVIEW_START]
    metadata: List[str] = []
    if show_metadata and tree is not None:
        generated = (clock or _now)().isoformat(timespec="seconds")
        metadata = [
            f"Workspace: {root.name}",
            f"Root: {root}",
            f"Generated: {generated}",
            f"Directories: {tree.directory_count}",
            f"Files: {tree.file_count}",
        ]
        if settings.template is TemplateMode.SUMMARY:
            metadata.append("")
            metadata.extend(format_extension_summary(tree.extension_counts))
    lines.extend(metadata)

    if show_tree and tree is not None and tree.lines:
        if metadata:
            lines.append("")
        lines.append("PROJECT TREE:")
        lines.extend(tree.lines)
        if tree.excluded_entries:
            lines.append(f"Excluded entries: {tree.excluded_entries}")

    lines.append(OVERVIEW_END)
    return "\n".join(lines) + "\n\n"


# =============================================================================
# DOCUMENT COMPOSER
# =============================================================================

def format_file_section(filename: str, relative_path: str, content: str) -> str:
    """Frame one file's text with its name and workspace-relative path."""
    return (
        f"\n{FILE_START}\n"
        f"Filename: {filename}\n"
        f"Path: {relative_path}\n"
        f"{FILE_CONTENT}\n"
        f"{content}\n"
        f"{FILE_END}\n"
    )


def find_overview_span(content: str) -> Optional[Tuple[int, int]]:
    """Start and end offsets of the overview block, markers included.

    Uses the first start marker and the first end marker. A missing marker
    or an end marker before the start marker means there is no block.
    """
    start = content.find(OVERVIEW_START)
    end = content.find(OVERVIEW_END)
    if start < 0 or end < 0 or end < start:
        return None
    return start, end + len(OVERVIEW_END)


def _drop_line_break(text: str) -> str:
    for newline in ("\r\n", "\n"):
        if text.startswith(newline):
            return text[len(newline):]
    return text


def strip_overview(content: str) -> str:
    """Remove the overview block and one trailing blank line, if present."""
    span = find_overview_span(content)
    if span is None:
        return content
    start, end = span
    rest = _drop_line_break(content[end:])
    rest = _drop_line_break(rest)
    return content[:start] + rest


def compose_document(
    existing: str, overview_block: Optional[str], file_sections: str
) -> str:
    """Replace the overview block and append the new file sections."""
    body = strip_overview(existing)
    if overview_block is None:
        return body + file_sections
    if body and not body.startswith("\n"):
        body = "\n" + body
    return overview_block + body + file_sections


# =============================================================================
# SETTINGS STORE
# =============================================================================

def _bool_value(raw: Any) -> Optional[bool]:
    return raw if isinstance(raw, bool) else None


def _int_value(raw: Any) -> Optional[int]:
    if isinstance(raw, bool) or not isinstance(raw, int):
        return None
    return raw


def _str_value(raw: Any) -> Optional[str]:
    return raw if isinstance(raw, str) and raw else None


def _str_list_value(raw: Any) -> Optional[Tuple[str, ...]]:
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        return None
    return tuple(raw)


def _template_value(raw: Any) -> Optional[TemplateMode]:
    try:
        return TemplateMode(raw)
    except ValueError:
        return None


SETTING_KEYS: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    "overview.enabled": ("overview_enabled", _bool_value),
    "overview.include_metadata": ("include_metadata", _bool_value),
    "overview.include_tree": ("include_tree", _bool_value),
    "overview.tree_max_depth": ("tree_max_depth", _int_value),
    "overview.tree_max_entries": ("tree_max_entries", _int_value),
    "overview.excluded_directories": ("excluded_directories", _str_list_value),
    "overview.template": ("template", _template_value),
    "output.path": ("output_path", _str_value),
}


class SettingsStore:
    """Read-only key-value settings with dotted keys."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self.data = dict(data or {})

    @classmethod
    def from_file(cls, path: Path) -> SettingsStore:
        """Load a TOML settings file. A missing file is an empty store."""
        try:
            with open(path, "rb") as f:
                return cls(tomllib.load(f))
        except FileNotFoundError:
            return cls()
        except tomllib.TOMLDecodeError as e:
            raise UserInputError(f"Invalid settings file {path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self.data
        for part in key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return default
            node = node[part]
        return node


def load_settings(root: Path) -> Settings:
    return Settings.from_store(SettingsStore.from_file(Path(root) / SETTINGS_FILE))


class ConfigBuilder:
    """Applies CLI overrides on top of stored settings."""

    @staticmethod
    def from_args(args: argparse.Namespace, base: Settings) -> Settings:
        """Create settings from parsed arguments."""
        overrides: Dict[str, Any] = {}
        if getattr(args, "output", None):
            overrides["output_path"] = args.output
        if getattr(args, "no_overview", False):
            overrides["overview_enabled"] = False
        if getattr(args, "no_metadata", False):
            overrides["include_metadata"] = False
        if getattr(args, "no_tree", False):
            overrides["include_tree"] = False
        if getattr(args, "template", None):
            overrides["template"] = TemplateMode(args.template)
        if getattr(args, "max_depth", None) is not None:
            overrides["tree_max_depth"] = args.max_depth
        if getattr(args, "max_entries", None) is not None:
            overrides["tree_max_entries"] = args.max_entries
        if getattr(args, "exclude_dir", None):
            overrides["excluded_directories"] = tuple(args.exclude_dir)
        return replace(base, **overrides)


# =============================================================================
# OPERATIONS
# =============================================================================

def _resolve_workspace(workspace: Optional[Path]) -> Path:
    if workspace is None:
        raise UserInputError(
            "You must have a workspace/folder open to use this command."
        )
    root = Path(workspace).resolve()
    if not root.is_dir():
        raise UserInputError(f"Workspace directory not found: {workspace}")
    return root


def _selection_roots(workspace: Path, root: Path, selections: Sequence[str]) -> List[str]:
    """Rebase selections onto the resolved workspace so ignore rules apply.

    A selection reached through a symlinked workspace is rewritten onto the
    real workspace path. Others are resolved when that lands inside it.
    """
    given = os.path.abspath(workspace)
    roots = []
    for selection in selections:
        path = os.path.abspath(selection)
        rel = os.path.relpath(path, given) if _same_drive(path, given) else os.pardir
        if rel != os.pardir and not rel.startswith(os.pardir + os.sep):
            roots.append(os.path.normpath(os.path.join(root, rel)))
            continue
        real = Path(path).resolve()
        roots.append(str(real) if real == root or root in real.parents else path)
    return roots


def _same_drive(a: str, b: str) -> bool:
    return os.path.splitdrive(a)[0].lower() == os.path.splitdrive(b)[0].lower()


def _read_document(fs: LocalFileSystem, document: Path) -> str:
    if not fs.exists(str(document)):
        return ""
    return decode_text(fs.read_bytes(str(document)))


def _write_result(
    result: RunResult,
    fs: LocalFileSystem,
    cancel: CancellationToken,
    overview_block: Optional[str],
    file_sections: str,
) -> RunResult:
    """Compose and write the document once, or report there is nothing to do."""
    if not file_sections and overview_block is None:
        if not result.message:
            result.message = "No valid text-based files to append."
        return result

    cancel.raise_if_cancelled()
    existing = _read_document(fs, result.document)
    content = compose_document(existing, overview_block, file_sections)
    fs.write_text(str(result.document), content)
    result.written = True
    result.overview = overview_block is not None
    return result


def append_to_document(
    workspace: Optional[Path],
    selections: Sequence[str],
    settings: Optional[Settings] = None,
    fs: Optional[LocalFileSystem] = None,
    cancel: Optional[CancellationToken] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RunResult:
    """Append the selected files and directories to the output document."""
    settings = settings or Settings()
    fs = fs or LocalFileSystem()
    cancel = cancel or CancellationToken()
    root = _resolve_workspace(workspace)

    if not selections:
        raise UserInputError("No file or directory provided to append.")
    roots = _selection_roots(workspace, root, selections)
    if not any(_is_selectable(fs, r) for r in roots):
        raise UserInputError("Selected item is neither file nor folder.")

    document = settings.output_document(root)
    skip = [str(document)]
    path_filter = PathFilter.for_workspace(root)

    collected = Collector(
        path_filter, fs, cancel, skip, settings.excluded_directories,
    ).collect(roots)
    result = RunResult(document=document, diagnostics=list(collected.diagnostics))
    # Snapshot before the overview walk adds its own exclusions
    result.excluded = path_filter.excluded_counts()

    sections = []
    for path in collected.files:
        cancel.raise_if_cancelled()
        try:
            text = decode_text(fs.read_bytes(path))
        except OSError as e:
            error = TraversalError(path, e.strerror or str(e))
            logger.debug(f"Skipping unreadable file {path}: {error.reason}")
            result.unreadable += 1
            result.diagnostics.append(error.diagnostic("read"))
            continue

        if is_binary_content(text):
            logger.debug(f"Skipping binary or unreadable file: {path}")
            result.binary_skipped += 1
            continue

        sections.append(format_file_section(
            os.path.basename(path), os.path.relpath(path, root), text,
        ))
    result.appended = len(sections)

    overview_block = None
    if settings.overview_enabled:
        overview_block = render_overview(
            root, settings, path_filter, fs, cancel, clock, skip,
        )

    return _write_result(result, fs, cancel, overview_block, "".join(sections))


def refresh_overview(
    workspace: Optional[Path],
    settings: Optional[Settings] = None,
    fs: Optional[LocalFileSystem] = None,
    cancel: Optional[CancellationToken] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RunResult:
    """Regenerate only the overview block, keeping the appended files."""
    settings = settings or Settings()
    fs = fs or LocalFileSystem()
    cancel = cancel or CancellationToken()
    root = _resolve_workspace(workspace)

    document = settings.output_document(root)
    result = RunResult(document=document)
    if not settings.overview_enabled:
        result.message = "Project overview is disabled; nothing to refresh."
        return result

    path_filter = PathFilter.for_workspace(root)
    overview_block = render_overview(
        root, settings, path_filter, fs, cancel, clock, [str(document)],
    )
    result.excluded = path_filter.excluded_counts()
    return _write_result(result, fs, cancel, overview_block, "")


def open_document(
    workspace: Optional[Path],
    settings: Optional[Settings] = None,
    fs: Optional[LocalFileSystem] = None,
) -> Path:
    """Make sure the output document exists and return its path."""
    settings = settings or Settings()
    fs = fs or LocalFileSystem()
    document = settings.output_document(_resolve_workspace(workspace))
    if not fs.exists(str(document)):
        fs.write_text(str(document), "")
    return document


def _is_selectable(fs: LocalFileSystem, path: str) -> bool:
    try:
        return fs.entry_kind(path) is not EntryKind.OTHER
    except OSError:
        return False


# =============================================================================
# OUTPUT WRITER
# =============================================================================

class OutputWriter:
    """Copies the finished document to the clipboard on request."""

    @staticmethod
    def copy_to_clipboard(content: str) -> bool:
        """Copy to clipboard."""
        try:
            pyperclip.copy(content)
        except pyperclip.PyperclipException as e:
            print(f"❌ Clipboard error: {e}", file=sys.stderr)
            return False
        print(f"📋 {len(content):,} chars copied to clipboard", file=sys.stderr)
        return True


# =============================================================================
# CLI PARSER
# =============================================================================

def _add_overview_options(parser: argparse.ArgumentParser) -> None:
    out = parser.add_argument_group("Output Options")
    out.add_argument("-o", "--output", metavar="FILE", help="Output document (default: LLM_doc.txt)")
    out.add_argument("--copy", action="store_true", help="Copy the document to the clipboard")

    ov = parser.add_argument_group("Project Overview")
    ov.add_argument("--no-overview", action="store_true", help="Do not generate the overview block")
    ov.add_argument("--no-metadata", action="store_true", help="Leave metadata out of the overview")
    ov.add_argument("--no-tree", action="store_true", help="Leave the tree out of the overview")
    ov.add_argument(
        "--template",
        choices=[mode.value for mode in TemplateMode],
        help="Overview template (default: full)",
    )
    ov.add_argument("--max-depth", type=int, metavar="N", help="Tree depth, 0 for unlimited (default: 3)")
    ov.add_argument("--max-entries", type=int, metavar="N", help="Entries per directory, 0 for unlimited (default: 30)")
    ov.add_argument(
        "--exclude-dir",
        action="append",
        metavar="GLOB",
        help="Entry name glob hidden from the tree (replaces the defaults)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="llmdoc",
        description="Append project files to a single document for LLMs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  llmdoc append src/main.py        # Append one file
  llmdoc append src tests          # Append whole directories
  llmdoc overview --template summary
  llmdoc open --copy               # Copy the document to the clipboard
        """,
    )
    parser.add_argument(
        "-w", "--workspace",
        type=Path,
        default=Path("."),
        help="Workspace root (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")

    commands = parser.add_subparsers(dest="command", required=True)

    append = commands.add_parser("append", help="Append files or directories")
    append.add_argument("paths", nargs="+", metavar="PATH", help="Files or directories to append")
    _add_overview_options(append)

    overview = commands.add_parser("overview", help="Refresh the project overview only")
    _add_overview_options(overview)

    open_ = commands.add_parser("open", help="Create the document if needed and print its path")
    open_.add_argument("-o", "--output", metavar="FILE", help="Output document (default: LLM_doc.txt)")
    open_.add_argument("--copy", action="store_true", help="Copy the document to the clipboard")

    return parser


# =============================================================================
# MAIN
# =============================================================================

def _report(result: RunResult) -> None:
    for diagnostic in result.diagnostics:
        logging.warning(str(diagnostic))
    if result.written:
        print(f"✅ {result.summary_line()}", file=sys.stderr)
    else:
        print(f"⚠️ {result.message}", file=sys.stderr)


def _run(args: argparse.Namespace, cancel: CancellationToken) -> int:
    root = _resolve_workspace(args.workspace)
    settings = ConfigBuilder.from_args(args, load_settings(root))

    if args.command == "open":
        document = open_document(root, settings)
        print(document)
    else:
        if args.command == "append":
            result = append_to_document(
                root, [os.path.abspath(p) for p in args.paths], settings,
                cancel=cancel,
            )
        else:
            result = refresh_overview(root, settings, cancel=cancel)
        _report(result)
        if not result.written:
            return 0
        document = result.document

    if args.copy:
        content = document.read_text(encoding="utf-8", errors="replace")
        return 0 if OutputWriter.copy_to_clipboard(content) else 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    cancel = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
    try:
        return _run(args, cancel)
    except (Cancelled, KeyboardInterrupt):
        print("\n⚠️ Operation cancelled", file=sys.stderr)
        return 130
    except UserInputError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logging.exception("Critical error")
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
