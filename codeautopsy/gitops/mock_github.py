from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from codeautopsy.errors import LogUnavailableError, RetrievalError
from codeautopsy.gitops.render import fix_branch_name
from codeautopsy.models import FailureEvent, PublishedRef, RetrievedFile
from codeautopsy.parsers.language import detect_from_path


def _next_number(directory: str) -> int:
    # Millisecond clock, bumped past any number already on disk.
    n = int(time.time() * 1000)
    while os.path.exists(os.path.join(directory, f"{n}.json")):
        n += 1
    return n


@dataclass(frozen=True)
class MockPublisher:
    """
    Publishing without network or git. It writes:
      - PR metadata + fixed file: <root>/prs/<n>.json
      - issues:                   <root>/issues/<n>.json
    A second PR for the same fix branch returns the first one.
    """

    root_dir: str
    public_base_url: str = "http://localhost:8088"

    def _find_pr_for_branch(self, branch: str) -> Optional[Dict[str, Any]]:
        pr_dir = os.path.join(self.root_dir, "prs")
        if not os.path.isdir(pr_dir):
            return None
        for name in sorted(os.listdir(pr_dir)):
            if not name.endswith(".json"):
                continue
            with open(os.path.join(pr_dir, name), "r", encoding="utf-8") as f:
                meta = json.load(f)
            if meta.get("branch") == branch:
                return meta
        return None

    def open_pull_request(
        self,
        event: FailureEvent,
        *,
        file_path: str,
        fixed_content: str,
        base_sha: Optional[str],
        title: str,
        body: str,
        labels: list[str],
    ) -> PublishedRef:
        branch = fix_branch_name(event)
        existing = self._find_pr_for_branch(branch)
        if existing is not None:
            return PublishedRef(
                kind="pr", url=str(existing["url"]), id=int(existing["number"]), branch_name=branch, mode="mock"
            )

        pr_dir = os.path.join(self.root_dir, "prs")
        os.makedirs(pr_dir, exist_ok=True)
        number = _next_number(pr_dir)
        url = f"{self.public_base_url.rstrip('/')}/mock/pr/{number}"
        meta = {
            "number": number,
            "url": url,
            "repo": event.repo_full_name,
            "event_id": event.id,
            "title": title,
            "body": body,
            "labels": labels,
            "branch": branch,
            "base_sha": base_sha or event.commit_sha,
            "file_path": file_path,
            "fixed_content": fixed_content,
        }
        with open(os.path.join(pr_dir, f"{number}.json"), "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        return PublishedRef(kind="pr", url=url, id=number, branch_name=branch, mode="mock")

    def open_issue(self, event: FailureEvent, *, title: str, body: str, labels: list[str]) -> PublishedRef:
        issue_dir = os.path.join(self.root_dir, "issues")
        os.makedirs(issue_dir, exist_ok=True)
        number = _next_number(issue_dir)
        url = f"{self.public_base_url.rstrip('/')}/mock/issue/{number}"
        meta = {
            "number": number,
            "url": url,
            "repo": event.repo_full_name,
            "event_id": event.id,
            "title": title,
            "body": body,
            "labels": labels,
        }
        with open(os.path.join(issue_dir, f"{number}.json"), "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        return PublishedRef(kind="issue", url=url, id=number, mode="mock")


@dataclass(frozen=True)
class LocalCodeRetriever:
    """Reads sources from a local checkout (mock mode). The ref is recorded but not checked out."""

    repo_root: str

    def fetch_file(self, repo_full_name: str, path: str, ref: str) -> RetrievedFile:
        root = os.path.abspath(self.repo_root)
        full = os.path.abspath(os.path.join(root, path))
        if os.path.commonpath([root, full]) != root:
            raise RetrievalError(f"path escapes repository root: {path}")
        if not os.path.isfile(full):
            raise RetrievalError(f"File not found: {path}")
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
        return RetrievedFile(path=path, content=content, revision_id=None, ref=ref, language=detect_from_path(path))


@dataclass(frozen=True)
class MockLogSource:
    """
    Build logs on disk for mock mode: <root>/logs/<run_id>.log, or <root>/logs/<run_id>-<job_id>.log
    when a job id is given. Missing file -> None; ids that would resolve outside <root>/logs raise.
    """

    root_dir: str

    def fetch_build_log(self, repo_full_name: str, run_id: str, *, job_id: Optional[str] = None) -> Optional[str]:
        log_dir = os.path.abspath(os.path.join(self.root_dir, "logs"))
        names = [f"{run_id}-{job_id}.log", f"{run_id}.log"] if job_id else [f"{run_id}.log"]
        for name in names:
            path = os.path.abspath(os.path.join(log_dir, name))
            if os.path.commonpath([log_dir, path]) != log_dir:
                raise LogUnavailableError(f"log path escapes log directory: {name}")
            if os.path.isfile(path):
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    return f.read()
        return None
