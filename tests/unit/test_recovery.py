from __future__ import annotations

import pytest

from pipemedic.errors import RecoveryError
from pipemedic.models import Category
from pipemedic.prompting.recovery import (
    DEFAULT_DIAGNOSIS,
    parse_json_object,
    recover_diagnosis,
    recover_diff,
    recover_json,
)


def test_json_embedded_in_prose_is_recovered() -> None:
    raw = 'Sure! Here is the analysis:\n{"summary":"x","confidence":0.9}\nHope this helps.'
    assert parse_json_object(raw) == {"summary": "x", "confidence": 0.9}


def test_braces_inside_strings_do_not_break_extraction() -> None:
    raw = 'noise {"summary": "template {{ var }} missing", "category": "config"} trailing }'
    obj = parse_json_object(raw)
    assert obj["summary"] == "template {{ var }} missing"


def test_unparseable_text_falls_back_to_default() -> None:
    assert recover_json("the build failed because of reasons") == DEFAULT_DIAGNOSIS
    with pytest.raises(RecoveryError):
        parse_json_object("")


def test_diagnosis_is_coerced_into_known_values() -> None:
    d = recover_diagnosis('{"summary":"s","rootCause":"r","category":"Weird","confidence":7,"failingFile":"src/app.py"}')
    assert d.category == Category.other
    assert d.confidence == 1.0
    assert d.failing_file == "src/app.py"
    assert d.root_cause == "r"

    fallback = recover_diagnosis("no json here")
    assert fallback.summary == "Unable to parse RCA"
    assert fallback.confidence == pytest.approx(0.2)


def test_fenced_diff_is_unwrapped() -> None:
    raw = "```diff\ndiff --git a/x.py b/x.py\n--- a/x.py\n+++ b/x.py\n@@ -1 +1 @@\n-a\n+b\n```\n"
    out = recover_diff(raw)
    assert out is not None
    assert out.startswith("diff --git a/x.py b/x.py\n")
    assert out.endswith("+b\n")
    assert "```" not in out


def test_too_short_diff_is_none() -> None:
    assert recover_diff("```\n\n```") is None
    assert recover_diff("") is None


def test_prose_wrapped_diagnosis_example() -> None:
    raw = 'Sure! Here is it:\n{"summary":"s","rootCause":"r","category":"test","confidence":0.8}\nThanks'
    assert recover_json(raw) == {"summary": "s", "rootCause": "r", "category": "test", "confidence": 0.8}
    d = recover_diagnosis(raw)
    assert d.category == Category.test
    assert d.confidence == pytest.approx(0.8)


def test_code_fences_inside_the_diff_are_kept() -> None:
    body = (
        "diff --git a/README.md b/README.md\n"
        "--- a/README.md\n"
        "+++ b/README.md\n"
        "@@ -1,1 +1,4 @@\n"
        " # title\n"
        "+```python\n"
        "+x = 1\n"
        "+```\n"
    )
    assert recover_diff("```diff\n" + body + "```\n") == body
    assert recover_diff(body) == body
