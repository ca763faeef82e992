from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import httpx

from codeautopsy.errors import CollaboratorError
from codeautopsy.models import FailureEvent, Outcome, State


COLORS = {
    "success": "#36a64f",
    "error": "#ff0000",
    "warning": "#ffcc00",
    "info": "#3aa3e3",
}

_HEADLINES: Dict[State, Tuple[str, str]] = {
    State.pr_created: ("CodeAutopsy: Fix Proposed", "success"),
    State.manual_review: ("CodeAutopsy: Manual Review Required", "warning"),
    State.skipped: ("CodeAutopsy: Skipped", "info"),
    State.failed: ("CodeAutopsy: Pipeline Failed", "error"),
}


def headline(outcome: Outcome) -> Tuple[str, str]:
    return _HEADLINES.get(outcome.status, ("CodeAutopsy", "info"))


def _pct(v: float | None) -> str:
    return f"{v * 100:.0f}%" if v is not None else "N/A"


def _facts(event: FailureEvent, outcome: Outcome) -> List[Tuple[str, str]]:
    facts = [
        ("Repository", event.repo_full_name),
        ("Branch", event.branch or "main"),
        ("Error Type", event.error_kind or "Unknown"),
        ("Confidence", _pct(outcome.confidence)),
    ]
    if event.file_path:
        facts.append(("File", f"`{event.file_path}`"))
    if outcome.error:
        facts.append(("Reason", outcome.error[:500]))
    return facts


def slack_payload(event: FailureEvent, outcome: Outcome) -> Dict[str, Any]:
    title, tone = headline(outcome)
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title}},
        {
            "type": "section",
            "fields": [{"type": "mrkdwn", "text": f"*{k}:*\n{v}"} for k, v in _facts(event, outcome)],
        },
    ]
    if outcome.ref is not None:
        label = f"View PR #{outcome.ref.id}" if outcome.ref.kind == "pr" else f"View Issue #{outcome.ref.id}"
        blocks.append(
            {
                "type": "actions",
                "elements": [{"type": "button", "text": {"type": "plain_text", "text": label}, "url": outcome.ref.url}],
            }
        )
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"event `{event.id}`"}]})
    return {"attachments": [{"color": COLORS[tone], "blocks": blocks}]}


def discord_payload(event: FailureEvent, outcome: Outcome) -> Dict[str, Any]:
    title, tone = headline(outcome)
    embed: Dict[str, Any] = {
        "title": title,
        "color": int(COLORS[tone].lstrip("#"), 16),
        "fields": [{"name": k, "value": v, "inline": k not in ("File", "Reason")} for k, v in _facts(event, outcome)],
        "footer": {"text": f"event {event.id}"},
    }
    if outcome.ref is not None:
        embed["url"] = outcome.ref.url
    return {"username": "CodeAutopsy", "embeds": [embed]}


@dataclass(frozen=True)
class WebhookNotifier:
    """Posts an outcome to a Slack or Discord incoming webhook."""

    name: str  # "slack" | "discord"
    url: str
    timeout_s: float = 10.0
    transport: httpx.BaseTransport | None = None

    def payload(self, event: FailureEvent, outcome: Outcome) -> Dict[str, Any]:
        if self.name == "discord":
            return discord_payload(event, outcome)
        return slack_payload(event, outcome)

    def notify(self, event: FailureEvent, outcome: Outcome) -> None:
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as c:
                r = c.post(self.url, json=self.payload(event, outcome))
                r.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"{self.name}_notify_failed: {e}") from e
