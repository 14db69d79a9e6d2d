from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from pipemedic.errors import DiffValidationError


MIN_DIFF_CHARS = 10

_FILE_HEADER_RE = re.compile(r"^diff --git a/(?P<old>\S+) b/(?P<new>\S+)\s*$")
_HUNK_HEADER_RE = re.compile(r"^@@ -(?P<os>\d+)(?:,(?P<oc>\d+))? \+(?P<ns>\d+)(?:,(?P<nc>\d+))? @@(?P<section>.*)$")
_QUIET_HEADER_PREFIXES = ("index ", "new file mode", "deleted file mode")
_NO_NEWLINE_MARKER = "\\ No newline at end of file"

LineKind = Literal["context", "add", "delete"]


@dataclass(frozen=True)
class HunkLine:
    kind: LineKind
    text: str


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[HunkLine] = field(default_factory=list)

    @property
    def old_lines(self) -> List[str]:
        return [ln.text for ln in self.lines if ln.kind != "add"]

    @property
    def new_lines(self) -> List[str]:
        return [ln.text for ln in self.lines if ln.kind != "delete"]

    @property
    def added(self) -> List[str]:
        return [ln.text for ln in self.lines if ln.kind == "add"]


@dataclass
class FilePatch:
    old_path: str
    new_path: str
    is_new_file: bool = False
    is_deleted_file: bool = False
    hunks: List[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.old_path if self.is_deleted_file else self.new_path


@dataclass
class ParsedDiff:
    files: List[FilePatch] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]


@dataclass(frozen=True)
class DiffValidation:
    ok: bool
    error: str | None = None
    diff: ParsedDiff | None = None


def _strip_path_prefix(raw: str, prefix: str) -> Optional[str]:
    p = raw.strip().split("\t", 1)[0]
    if p == "/dev/null":
        return None
    if p.startswith(prefix):
        return p[len(prefix) :]
    return p


def _missing(hunk: Hunk | None) -> tuple[int, int]:
    if hunk is None:
        return 0, 0
    old_seen = sum(1 for ln in hunk.lines if ln.kind != "add")
    new_seen = sum(1 for ln in hunk.lines if ln.kind != "delete")
    return hunk.old_count - old_seen, hunk.new_count - new_seen


def _is_file_header(line: str, hunk: Hunk | None) -> bool:
    # "--- x" is a deletion of "-- x" while the open hunk still expects old lines.
    old_missing, new_missing = _missing(hunk)
    if line.startswith("--- "):
        return old_missing <= 0
    if line.startswith("+++ "):
        return new_missing <= 0
    return False


def _close_hunk(hunk: Hunk | None) -> None:
    if hunk is None:
        return
    old_missing, new_missing = _missing(hunk)
    if old_missing != 0:
        raise DiffValidationError(f"hunk old_count mismatch: expected {hunk.old_count}, saw {hunk.old_count - old_missing}")
    if new_missing != 0:
        raise DiffValidationError(f"hunk new_count mismatch: expected {hunk.new_count}, saw {hunk.new_count - new_missing}")


def parse_unified_diff(text: str) -> ParsedDiff:
    """
    Parse a unified diff into a structured value, enforcing a strict grammar.

    Fail-closed: anything that is not a recognised header, hunk header or hunk
    line raises DiffValidationError with the offending line quoted. Target file
    content is never consulted.
    """
    if not isinstance(text, str) or len(text.strip()) < MIN_DIFF_CHARS:
        raise DiffValidationError("empty or invalid diff")

    body = text[:-1] if text.endswith("\n") else text
    lines = body.split("\n")
    if not _FILE_HEADER_RE.match(lines[0]):
        raise DiffValidationError("missing diff header")

    parsed = ParsedDiff()
    current: FilePatch | None = None
    hunk: Hunk | None = None

    for line in lines:
        m = _FILE_HEADER_RE.match(line)
        if m:
            _close_hunk(hunk)
            hunk = None
            current = FilePatch(old_path=m.group("old"), new_path=m.group("new"))
            parsed.files.append(current)
            continue

        if _is_file_header(line, hunk):
            _close_hunk(hunk)
            hunk = None
            if current is None:
                raise DiffValidationError("missing diff header")
            if line.startswith("--- "):
                old = _strip_path_prefix(line[4:], "a/")
                if old is None:
                    current.is_new_file = True
                else:
                    current.old_path = old
            else:
                new = _strip_path_prefix(line[4:], "b/")
                if new is None:
                    current.is_deleted_file = True
                else:
                    current.new_path = new
            continue

        if line.startswith("@@"):
            hm = _HUNK_HEADER_RE.match(line)
            if not hm:
                raise DiffValidationError(f"malformed hunk header: {line!r}")
            _close_hunk(hunk)
            if current is None:
                raise DiffValidationError("missing diff header")
            hunk = Hunk(
                old_start=int(hm.group("os")),
                old_count=int(hm.group("oc")) if hm.group("oc") is not None else 1,
                new_start=int(hm.group("ns")),
                new_count=int(hm.group("nc")) if hm.group("nc") is not None else 1,
            )
            current.hunks.append(hunk)
            continue

        if hunk is not None:
            if line.startswith(("+++", "---")) and not line.startswith(("+++ ", "--- ")):
                raise DiffValidationError(f"invalid diff line inside hunk: {line!r}")
            if line.startswith("+"):
                hunk.lines.append(HunkLine("add", line[1:]))
                continue
            if line.startswith("-"):
                hunk.lines.append(HunkLine("delete", line[1:]))
                continue
            if line.startswith(" "):
                hunk.lines.append(HunkLine("context", line[1:]))
                continue
            if line == _NO_NEWLINE_MARKER:
                continue
            raise DiffValidationError(f"invalid diff line inside hunk: {line!r}")

        if not line.strip():
            continue
        if line.startswith(_QUIET_HEADER_PREFIXES):
            if current is None:
                raise DiffValidationError("missing diff header")
            if line.startswith("new file mode"):
                current.is_new_file = True
            elif line.startswith("deleted file mode"):
                current.is_deleted_file = True
            continue
        raise DiffValidationError(f"unexpected line outside hunk: {line!r}")

    _close_hunk(hunk)
    return parsed


def validate_unified_diff(text: str) -> DiffValidation:
    try:
        return DiffValidation(ok=True, diff=parse_unified_diff(text))
    except DiffValidationError as e:
        return DiffValidation(ok=False, error=str(e))
