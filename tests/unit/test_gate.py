from __future__ import annotations

import pytest

from codeautopsy.policy.gate import ProtectedPathGate, publish_decision


@pytest.mark.parametrize(
    "path",
    [
        ".github/workflows/ci.yml",
        "/home/runner/work/app/app/config/settings.py",
        "src/app_config.py",
        "deploy/SECRETS.yaml",
        ".env.production",
    ],
)
def test_protected_paths(path: str) -> None:
    assert ProtectedPathGate().matched(path) is not None


@pytest.mark.parametrize("path", ["src/main.py", "lib/parser.rb", "", None])
def test_unprotected_paths(path) -> None:
    gate = ProtectedPathGate()
    assert gate.matched(path) is None


def test_matched_names_the_rule_and_custom_lists() -> None:
    assert ProtectedPathGate().matched(".github/workflows/release.yml") == ".github/workflows"
    gate = ProtectedPathGate(("migrations/",))
    assert gate.matched("db/migrations/0001_init.py") == "migrations/"
    assert gate.matched("config/app.py") is None


@pytest.mark.parametrize(
    "confidence,action",
    [(0.92, "pr"), (0.85, "pr"), (0.84, "issue"), (0.6, "issue"), (0.5, "issue"), (0.49, "skip"), (0.0, "skip")],
)
def test_publish_decision_defaults(confidence: float, action: str) -> None:
    assert publish_decision(confidence) == action


def test_floor_above_threshold_is_clamped() -> None:
    assert publish_decision(0.7, threshold=0.6, floor=0.9) == "pr"
    assert publish_decision(0.55, threshold=0.6, floor=0.9) == "skip"
