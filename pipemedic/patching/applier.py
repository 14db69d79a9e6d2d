from __future__ import annotations

from typing import Dict, List, Mapping

from pipemedic.errors import PatchApplyError
from pipemedic.patching.unified_diff import FilePatch, ParsedDiff


def _same_line(a: str, b: str) -> bool:
    return a.rstrip("\r") == b.rstrip("\r")


def _apply_new_file(file_patch: FilePatch) -> str:
    added: List[str] = []
    for h in file_patch.hunks:
        added.extend(h.added)
    content = "\n".join(added)
    if not content.strip():
        raise PatchApplyError("invalid new-file patch content")
    return content + "\n"


def _split_lines(text: str) -> List[str]:
    # Only "\n" ends a line; "\r" stays on the line so CRLF files round-trip.
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def _apply_existing(original: str, file_patch: FilePatch) -> str:
    lines = _split_lines(original)
    trailing_newline = original.endswith("\n")
    crlf = bool(lines) and all(ln.endswith("\r") for ln in lines)
    offset = 0
    last_end = 0

    for hunk in sorted(file_patch.hunks, key=lambda h: h.old_start):
        old = hunk.old_lines
        new = hunk.new_lines
        # A hunk with an empty old side inserts after line `old_start`.
        start = (hunk.old_start if not old else hunk.old_start - 1) + offset
        if start < last_end:
            raise PatchApplyError(f"overlapping hunks at line {hunk.old_start}")
        end = start + len(old)
        if start < 0 or end > len(lines):
            raise PatchApplyError(f"context mismatch at line {hunk.old_start}: hunk extends past end of file")
        for i, expected in enumerate(old):
            if not _same_line(lines[start + i], expected):
                raise PatchApplyError(
                    f"context mismatch at line {hunk.old_start + i}: expected {expected!r}, found {lines[start + i]!r}"
                )
        if crlf:
            new = [ln if ln.endswith("\r") else ln + "\r" for ln in new]
        lines[start:end] = new
        offset += len(new) - len(old)
        last_end = start + len(new)

    out = "\n".join(lines)
    if out and trailing_newline:
        out += "\n"
    if not out.strip() or out == original:
        raise PatchApplyError("could not apply patch to existing file")
    return out


def apply_file_patch(original: str, file_patch: FilePatch) -> str:
    """
    Apply one file's hunks to its original text and return the new text.

    Context and deletion lines must match the original exactly at the hunk's
    declared position; there is no fuzzy search for a better offset.
    """
    if file_patch.is_deleted_file:
        raise PatchApplyError(f"file deletion is not supported: {file_patch.path}")
    if file_patch.is_new_file or (not original and all(not h.old_lines for h in file_patch.hunks)):
        return _apply_new_file(file_patch)
    if not file_patch.hunks:
        raise PatchApplyError("could not apply patch to existing file")
    return _apply_existing(original or "", file_patch)


def select_file_patch(parsed: ParsedDiff, path: str | None = None) -> FilePatch:
    if not parsed.files:
        raise PatchApplyError("diff contains no file patches")
    if path is None:
        return parsed.files[0]
    for fp in parsed.files:
        if path in (fp.new_path, fp.old_path):
            return fp
    raise PatchApplyError(f"diff does not touch {path}")


def apply_to_files(parsed: ParsedDiff, files: Mapping[str, str]) -> Dict[str, str]:
    """Apply every file patch in `parsed` against `files` (path -> content; missing means new file)."""
    out: Dict[str, str] = {}
    for fp in parsed.files:
        out[fp.path] = apply_file_patch(files.get(fp.path, ""), fp)
    return out
