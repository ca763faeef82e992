from __future__ import annotations

import pytest

from codeautopsy.llm.fixer import FixValidation, basic_validate, change_ratio, diff_summary, fix_confidence, is_complex_error
from codeautopsy.llm.parsing import extract_code_block, extract_json_object


def test_basic_validate_rejections() -> None:
    assert basic_validate("a\n", "  ").reason == "Fixed code is empty"
    assert basic_validate("a\nb\n", "a\nb").reason == "Fixed code is identical to original"
    too_many = basic_validate("a\nb", "a\nb\nc\nd\ne")
    assert too_many.is_valid is False
    assert too_many.reason.startswith("Too many lines changed")
    assert basic_validate("a\nb\n", "a\nc\n").is_valid is True


def test_change_ratio() -> None:
    assert change_ratio("abcd", "abcd") == 0.0
    assert change_ratio("abcd", "abXd") == pytest.approx(0.25)
    assert change_ratio("", "abc") == 3.0


def test_fix_confidence_rewards_small_valid_fixes() -> None:
    original = "x" * 100
    fixed = "x" * 99 + "y"
    c = fix_confidence(
        original=original,
        fixed=fixed,
        validation=FixValidation(is_valid=True, syntax_valid=True),
        error_kind="SyntaxError",
        line_number=3,
    )
    assert c == pytest.approx(1.0)


def test_fix_confidence_penalties_clamp_at_zero() -> None:
    c = fix_confidence(
        original="a",
        fixed="completely different",
        validation=FixValidation(is_valid=False, introduces_new_issues=True, potential_side_effects=["a", "b", "c"]),
        error_kind=None,
        line_number=None,
    )
    assert c == 0.0


def test_diff_summary() -> None:
    assert diff_summary("a\nb", "a\nb") == "No visible changes"
    assert diff_summary("a\nb", "a\nc\nd").split("\n") == ["~ Line 2: Changed", "+ Line 3: Added: `d`"]
    assert diff_summary("a\nb", "a").split("\n") == ["- Line 2: Removed: `b`"]

    original = "\n".join(str(i) for i in range(12))
    fixed = "\n".join(f"{i}!" for i in range(12))
    lines = diff_summary(original, fixed).split("\n")
    assert len(lines) == 6
    assert lines[-1] == "... and 7 more changes"


def test_is_complex_error() -> None:
    assert is_complex_error("TypeError", "x")
    assert is_complex_error("SyntaxError", "\n" * 250)
    assert not is_complex_error("SyntaxError", "x\ny")


def test_extract_json_object_variants() -> None:
    assert extract_json_object('{"a": 1}') == {"a": 1}
    assert extract_json_object('```json\n{"a": 2}\n```') == {"a": 2}
    assert extract_json_object('Sure! {"a": 3} hope that helps') == {"a": 3}
    for bad in ["", "no json here", "[1, 2]"]:
        with pytest.raises(ValueError):
            extract_json_object(bad)


def test_extract_code_block_prefers_language() -> None:
    text = "```text\nnotes\n```\n```python\nprint(1)\n```"
    assert extract_code_block(text, "python") == "print(1)"
    assert extract_code_block(text) == "notes"
    assert extract_code_block("plain body") == "plain body"
