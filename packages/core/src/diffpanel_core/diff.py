"""Unified-diff parsing and the filters applied before a diff reaches a model.

Two filters live here:

- ``filter_import_only_changes`` drops whole files whose edits are nothing but
  import/export churn. Reordering imports or adding an export is noise for a
  reviewer and costs tokens on every reviewer call.
- ``apply_exclude_patterns`` drops paths matching user globs (lockfiles,
  generated assets) before the diff is even requested from git.
"""

from __future__ import annotations

import functools
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Literal

logger = logging.getLogger(__name__)

LineKind = Literal["added", "removed", "context"]

_FILE_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_NEW_PATH_RE = re.compile(r"^\+\+\+ (?:b/)?(.+)$")
_HUNK_HEADER_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")
_IMPORT_BRACE_RE = re.compile(r"^import\s*\{")
_EXPORT_BRACE_RE = re.compile(r"^export\s*\{")


@dataclass
class DiffLine:
    kind: LineKind
    content: str  # without the leading +/-/space marker


@dataclass
class Hunk:
    header: str
    lines: list[DiffLine] = field(default_factory=list)

    @property
    def changes(self) -> list[DiffLine]:
        return [line for line in self.lines if line.kind != "context"]


@dataclass
class FileDiff:
    path: str
    raw: str
    kind: Literal["text", "binary"] = "text"
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def changes(self) -> list[DiffLine]:
        return [change for hunk in self.hunks for change in hunk.changes]


@dataclass
class DiffDocument:
    files: list[FileDiff] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


def parse_diff(diff: str) -> DiffDocument:
    """Split a unified diff into per-file sections.

    Anything before the first ``diff --git`` header is not part of any file and
    is discarded. Each FileDiff keeps its raw text so the filter can re-emit it
    byte-for-byte.
    """
    sections: list[list[str]] = []
    for line in diff.split("\n"):
        if line.startswith("diff --git "):
            sections.append([line])
        elif sections:
            sections[-1].append(line)

    return DiffDocument(files=[_parse_file(lines) for lines in sections])


def _parse_file(lines: list[str]) -> FileDiff:
    header = _FILE_HEADER_RE.match(lines[0])
    path = header.group(2) if header else lines[0][len("diff --git ") :]
    file_diff = FileDiff(path=path, raw="\n".join(lines))

    current: Hunk | None = None
    for line in lines[1:]:
        if _HUNK_HEADER_RE.match(line):
            current = Hunk(header=line)
            file_diff.hunks.append(current)
            continue
        if current is None:
            # Extended header lines: index, mode changes, ---/+++ paths, binary markers.
            if line.startswith("Binary files ") or line == "GIT binary patch":
                file_diff.kind = "binary"
            new_path = _NEW_PATH_RE.match(line)
            if new_path and new_path.group(1) != "/dev/null":
                file_diff.path = new_path.group(1)
            continue
        if line.startswith("+"):
            current.lines.append(DiffLine("added", line[1:]))
        elif line.startswith("-"):
            current.lines.append(DiffLine("removed", line[1:]))
        else:
            current.lines.append(DiffLine("context", line[1:] if line.startswith(" ") else line))

    return file_diff


def is_import_or_export_line(content: str) -> bool:
    """Return True for a single changed line that only touches imports/exports.

    Matches single-line forms only. The inner lines of a multi-line
    ``import {\\n  a,\\n  b,\\n} from 'x'`` carry no keyword and are not
    recognised, so files that edit them are kept.
    """
    line = content.strip()
    if not line:
        return False
    return (
        line.startswith("import ")
        or line.startswith("export ")
        or line.startswith("} from ")
        or "= require(" in line
        or "import(" in line
        or bool(_IMPORT_BRACE_RE.match(line))
        or bool(_EXPORT_BRACE_RE.match(line))
        or (line.startswith("type ") and "import(" in line)
    )


def _is_import_only(file_diff: FileDiff) -> bool:
    changes = file_diff.changes
    # No edits at all (mode change, pure context) is never import noise.
    if not changes:
        return False
    return all(is_import_or_export_line(change.content) for change in changes)


def filter_import_only_changes(diff: str) -> str:
    """Drop files whose only changes are import/export statements.

    Binary files and files without changed lines pass through. Kept files are
    emitted in their original order with their original text.
    """
    if not diff.strip():
        return ""

    kept: list[str] = []
    for file_diff in parse_diff(diff).files:
        if file_diff.kind == "text" and _is_import_only(file_diff):
            logger.debug("Dropping import-only changes in %s", file_diff.path)
            continue
        kept.append(file_diff.raw)
    return "\n".join(kept)


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    return re.compile(_translate_glob(pattern) + r"\Z", re.DOTALL)


def _translate_glob(pattern: str) -> str:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    # "**/" spans zero or more whole directories.
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        elif c == "{":
            end = pattern.find("}", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                options = pattern[i + 1 : end].split(",")
                out.append("(?:" + "|".join(_translate_glob(o) for o in options) + ")")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


def matches_glob(path: str, pattern: str) -> bool:
    """Glob-match a repository-relative path.

    ``*`` and ``?`` stay within one path segment; ``**`` crosses segments, and
    ``**/`` also matches zero directories so ``**/*.svg`` matches ``icon.svg``.
    """
    if path.startswith("./"):
        path = path[2:]
    return _compile_glob(pattern).match(path) is not None


def apply_exclude_patterns(files: Iterable[str], patterns: Iterable[str] | None) -> list[str]:
    patterns = list(patterns or [])
    if not patterns:
        return list(files)
    return [f for f in files if not any(matches_glob(f, p) for p in patterns)]


def drop_excluded_files(diff: str, patterns: Iterable[str] | None) -> str:
    """Remove file sections whose path matches an exclude glob from a unified diff."""
    patterns = list(patterns or [])
    if not patterns or not diff.strip():
        return diff

    kept: list[str] = []
    for file_diff in parse_diff(diff).files:
        if any(matches_glob(file_diff.path, p) for p in patterns):
            logger.debug("Dropping excluded file %s from the diff", file_diff.path)
            continue
        kept.append(file_diff.raw)
    return "\n".join(kept)


def filter_files(
    files: Iterable[str],
    include: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> list[str]:
    """Keep files matching any include glob (when given), then drop excluded ones."""
    include = list(include or [])
    selected = [f for f in files if not include or any(matches_glob(f, p) for p in include)]
    return apply_exclude_patterns(selected, exclude)


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token) for diff-size warnings."""
    return math.ceil(len(text) / 4)


def format_num(num: int) -> str:
    return f"{num:,}"
