"""
Diff Codec
==========

Parse, apply and create unified diffs.

Lines are handled with their terminators attached so that files without
a trailing newline survive a create/apply round trip. Hunks are located
at their stated position first and then searched outward, which lets a
patch generated against a slightly older version of a file still apply.
"""

import difflib
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from fixloop.core.errors import DiffApplyError, DiffParseError

NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # (op, line) where op is " ", "-" or "+" and line keeps its "\n" if it had one
    lines: list[tuple[str, str]] = field(default_factory=list)
    section: str = ""

    @property
    def source_lines(self) -> list[str]:
        return [line for op, line in self.lines if op in (" ", "-")]

    @property
    def target_lines(self) -> list[str]:
        return [line for op, line in self.lines if op in (" ", "+")]


@dataclass
class FileDiff:
    old_path: Optional[str]
    new_path: Optional[str]
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or ""

    @property
    def is_new_file(self) -> bool:
        return self.old_path is None

    @property
    def is_deleted_file(self) -> bool:
        return self.new_path is None

    @property
    def additions(self) -> int:
        return sum(1 for h in self.hunks for op, _ in h.lines if op == "+")

    @property
    def deletions(self) -> int:
        return sum(1 for h in self.hunks for op, _ in h.lines if op == "-")


# ==========================================================================
# Helpers
# ==========================================================================

def split_lines(content: str) -> list[str]:
    """Split keeping "\\n" on every line but a final unterminated one."""
    if not content:
        return []
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _clean_path(raw: str) -> Optional[str]:
    path = raw.strip()
    # Strip trailing timestamps ("file\t2024-01-01 ...")
    if "\t" in path:
        path = path.split("\t", 1)[0]
    if path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


# ==========================================================================
# Parse
# ==========================================================================

def parse(text: str) -> list[FileDiff]:
    """
    Parse unified diff text into file diffs.

    Raises:
        DiffParseError: on malformed headers or truncated hunks
    """
    if not text or not text.strip():
        return []

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: list[FileDiff] = []
    current: Optional[FileDiff] = None
    i = 0

    while i < len(lines):
        line = lines[i]

        if line.startswith("diff --git "):
            match = re.match(r"^diff --git (\S+) (\S+)$", line)
            current = FileDiff(
                old_path=_clean_path(match.group(1)) if match else None,
                new_path=_clean_path(match.group(2)) if match else None,
            )
            files.append(current)
            i += 1
            continue

        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            old_path = _clean_path(line[4:])
            new_path = _clean_path(lines[i + 1][4:])
            if current is None or current.hunks:
                current = FileDiff(old_path=old_path, new_path=new_path)
                files.append(current)
            else:
                current.old_path = old_path
                current.new_path = new_path
            i += 2
            continue

        header = _HUNK_HEADER.match(line)
        if header:
            if current is None:
                raise DiffParseError("Hunk found before any file header")
            hunk, i = _parse_hunk(lines, i, header)
            current.hunks.append(hunk)
            continue

        # index lines, mode lines, "Binary files ..." and free text are ignored
        i += 1

    files = [f for f in files if f.hunks]
    if not files:
        raise DiffParseError("Diff contains no hunks")
    return files


def _parse_hunk(lines: list[str], i: int, header: re.Match) -> tuple[Hunk, int]:
    old_start = int(header.group(1))
    old_count = int(header.group(2)) if header.group(2) is not None else 1
    new_start = int(header.group(3))
    new_count = int(header.group(4)) if header.group(4) is not None else 1
    hunk = Hunk(old_start, old_count, new_start, new_count, section=header.group(5).strip())

    old_left, new_left = old_count, new_count
    i += 1
    while old_left > 0 or new_left > 0:
        if i >= len(lines):
            raise DiffParseError(
                f"Truncated hunk at -{old_start},{old_count}: "
                f"{old_left} old and {new_left} new lines missing"
            )
        raw = lines[i]
        if raw.startswith("\\"):
            _mark_no_newline(hunk)
            i += 1
            continue
        # Blank lines are context lines whose leading space was stripped
        op, body = (raw[0], raw[1:]) if raw else (" ", "")
        if op == " ":
            old_left -= 1
            new_left -= 1
        elif op == "-":
            old_left -= 1
        elif op == "+":
            new_left -= 1
        else:
            raise DiffParseError(f"Unexpected line in hunk: {raw[:80]!r}")
        if old_left < 0 or new_left < 0:
            raise DiffParseError(f"Hunk at -{old_start},{old_count} has more lines than its header")
        hunk.lines.append((op, body + "\n"))
        i += 1

    if i < len(lines) and lines[i].startswith("\\"):
        _mark_no_newline(hunk)
        i += 1
    return hunk, i


def _mark_no_newline(hunk: Hunk) -> None:
    if not hunk.lines:
        return
    op, line = hunk.lines[-1]
    if line.endswith("\n"):
        hunk.lines[-1] = (op, line[:-1])


# ==========================================================================
# Apply
# ==========================================================================

def _matches(candidate: list[str], expected: list[str], loose: bool) -> bool:
    if not loose:
        return candidate == expected
    return [c.rstrip("\r\n") for c in candidate] == [e.rstrip("\r\n") for e in expected]


def _locate(
    old: list[str],
    expected: list[str],
    start: int,
    floor: int,
) -> Optional[int]:
    """Find ``expected`` in ``old`` nearest to ``start`` but not before ``floor``."""
    if not expected:
        return max(floor, min(start, len(old)))

    last = len(old) - len(expected)
    if last < floor:
        return None
    for loose in (False, True):
        for distance in range(0, max(last - floor, 0) + len(old) + 1):
            for pos in (start + distance, start - distance) if distance else (start,):
                if floor <= pos <= last and _matches(old[pos:pos + len(expected)], expected, loose):
                    return pos
            if start - distance < floor and start + distance > last:
                break
    return None


def apply(content: str, diff: Union[str, FileDiff]) -> str:
    """
    Apply one file's diff to ``content``.

    ``diff`` may be a parsed ``FileDiff`` or diff text describing a single
    file. Empty diff text leaves the content unchanged.

    Raises:
        DiffApplyError: when a hunk cannot be located
        DiffParseError: when diff text is malformed or covers several files
    """
    if isinstance(diff, str):
        parsed = parse(diff) if diff.strip() else []
        if not parsed:
            return content
        if len(parsed) > 1:
            raise DiffParseError(f"Expected a single-file diff, got {len(parsed)} files")
        diff = parsed[0]

    old = split_lines(content)
    result: list[str] = []
    cursor = 0

    for index, hunk in enumerate(diff.hunks, start=1):
        expected = hunk.source_lines
        # A zero-length old range names the line *after which* text is inserted
        start = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        position = _locate(old, expected, start, cursor)
        if position is None:
            raise DiffApplyError(
                f"Hunk {index} of {diff.path} does not match the file near line {hunk.old_start}",
                details={"path": diff.path, "hunk": index, "old_start": hunk.old_start},
            )
        result.extend(old[cursor:position])
        result.extend(hunk.target_lines)
        cursor = position + len(expected)

    result.extend(old[cursor:])
    return "".join(result)


# ==========================================================================
# Create
# ==========================================================================

def create(old: str, new: str, path: str, context: int = 3) -> str:
    """Unified diff from ``old`` to ``new`` for ``path``. Empty if equal."""
    if old == new:
        return ""
    old_lines = split_lines(old)
    new_lines = split_lines(new)
    from_file = f"a/{path}" if old_lines else "/dev/null"
    to_file = f"b/{path}" if new_lines else "/dev/null"

    out: list[str] = []
    for line in difflib.unified_diff(
        old_lines, new_lines, fromfile=from_file, tofile=to_file, n=context
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n" + NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def stats(file_diffs: list[FileDiff]) -> tuple[int, int, list[str]]:
    """(lines added, lines removed, touched paths)"""
    added = sum(f.additions for f in file_diffs)
    removed = sum(f.deletions for f in file_diffs)
    return added, removed, [f.path for f in file_diffs]
