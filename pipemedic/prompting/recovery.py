from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pipemedic.errors import RecoveryError
from pipemedic.models import Category
from pipemedic.patching.unified_diff import MIN_DIFF_CHARS


DEFAULT_DIAGNOSIS: Dict[str, Any] = {
    "summary": "Unable to parse RCA",
    "rootCause": "unknown",
    "category": "other",
    "confidence": 0.2,
}

_OPEN_FENCE_RE = re.compile(r"\A\s*```[A-Za-z0-9_+-]*[ \t]*\r?\n")
_CLOSE_FENCE_RE = re.compile(r"\n```[ \t]*\s*\Z")


@dataclass(frozen=True)
class Diagnosis:
    summary: str
    root_cause: str
    category: Category
    failing_file: Optional[str]
    confidence: float


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object(raw: str) -> Dict[str, Any]:
    """
    Strict parse first, then the first balanced {...} substring.
    Raises RecoveryError when neither yields a JSON object.
    """
    t = (raw or "").strip()
    if not t:
        raise RecoveryError("empty")
    try:
        obj = json.loads(t)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass
    candidate = _first_balanced_object(t)
    if candidate is not None:
        try:
            obj = json.loads(candidate)
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError as e:
            raise RecoveryError(f"json_parse_failed: {e}") from e
    raise RecoveryError("no json object found")


def recover_json(raw: str) -> Dict[str, Any]:
    try:
        return parse_json_object(raw)
    except RecoveryError:
        return dict(DEFAULT_DIAGNOSIS)


def _as_confidence(v: Any) -> float:
    try:
        c = float(v)
    except (TypeError, ValueError):
        return 0.0
    if c != c:  # NaN
        return 0.0
    return max(0.0, min(1.0, c))


def coerce_diagnosis(obj: Dict[str, Any]) -> Diagnosis:
    cat_raw = str(obj.get("category") or "other").strip().lower()
    try:
        category = Category(cat_raw)
    except ValueError:
        category = Category.other
    failing = obj.get("failingFile") or obj.get("failing_file")
    return Diagnosis(
        summary=str(obj.get("summary") or ""),
        root_cause=str(obj.get("rootCause") or obj.get("root_cause") or ""),
        category=category,
        failing_file=str(failing).strip() if isinstance(failing, str) and failing.strip() else None,
        confidence=_as_confidence(obj.get("confidence")),
    )


def recover_diagnosis(raw: str) -> Diagnosis:
    return coerce_diagnosis(recover_json(raw))


def recover_diff(raw: str) -> str | None:
    """
    Strip one markdown fence wrapped around the whole response, plus surrounding
    whitespace. Backticks inside the diff body are left alone.
    Returns None when what remains is too short to be a diff.
    """
    t = raw or ""
    opened = _OPEN_FENCE_RE.match(t)
    if opened:
        t = _CLOSE_FENCE_RE.sub("", t[opened.end() :])
    t = t.lstrip().rstrip("\r\n")
    if len(t) < MIN_DIFF_CHARS:
        return None
    return t + "\n"
