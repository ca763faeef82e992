from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from codeautopsy.parsers.paths import normalize


DEFAULT_PROTECTED_PATHS = ("config", "secrets", ".github/workflows", ".env")

PublishAction = Literal["pr", "issue", "skip"]


@dataclass(frozen=True)
class ProtectedPathGate:
    """
    Hard veto on files that must never be changed automatically. Plain substring match on the
    normalized, lower-cased path (so "src/app_config.py" is protected by "config").
    """

    protected: Sequence[str] = DEFAULT_PROTECTED_PATHS

    def matched(self, file_path: str | None) -> str | None:
        p = normalize(file_path).lower()
        for s in self.protected:
            if s and s.lower() in p:
                return s
        return None


def publish_decision(confidence: float, *, threshold: float = 0.85, floor: float = 0.5) -> PublishAction:
    """
    pr at/above threshold, issue at/above floor, skip below the floor.
    A floor above the threshold is treated as equal to it.
    """
    if confidence >= threshold:
        return "pr"
    if confidence >= min(floor, threshold):
        return "issue"
    return "skip"
