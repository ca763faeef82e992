from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


@dataclass(frozen=True)
class GitHubFile:
    path: str
    content: str
    sha: Optional[str]


@dataclass(frozen=True)
class GitHubRestClient:
    """
    GitHub REST wrapper for one repository.

    Supports:
    - default branch / branch head lookup
    - branch creation (422 "already exists" is success)
    - reading and upserting files via the Contents API
    - PRs (422 "already exists" resolves to the open PR for the head branch) and issues
    - workflow run jobs and job log download

    Built on httpx with an overridable transport so tests never touch the network.
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "CodeAutopsy",
        }

    def _client(self, *, follow_redirects: bool = False) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport, follow_redirects=follow_redirects)

    def _url(self, suffix: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}{suffix}"

    def get_repo_default_branch(self) -> str:
        with self._client() as c:
            r = c.get(self._url(""), headers=self._headers())
            r.raise_for_status()
            data = r.json()
        return str(data.get("default_branch") or "main")

    def get_branch_head_sha(self, *, branch: str) -> str:
        with self._client() as c:
            r = c.get(self._url(f"/git/ref/heads/{branch}"), headers=self._headers())
            r.raise_for_status()
            data = r.json()
        return str((data.get("object") or {}).get("sha"))

    def create_branch(self, *, new_branch: str, from_sha: str) -> bool:
        """True when created, False when the branch already existed."""
        payload = {"ref": f"refs/heads/{new_branch}", "sha": from_sha}
        with self._client() as c:
            r = c.post(self._url("/git/refs"), headers=self._headers(), json=payload)
            # A retried job hits its own branch again.
            if r.status_code == 422 and "already exists" in r.text.lower():
                return False
            r.raise_for_status()
        return True

    def get_file(self, *, path: str, ref: str) -> Optional[GitHubFile]:
        with self._client() as c:
            r = c.get(self._url(f"/contents/{path.lstrip('/')}"), headers=self._headers(), params={"ref": ref})
            if r.status_code == 404:
                return None
            r.raise_for_status()
            data = r.json()
        if isinstance(data, list):
            raise ValueError(f"path is a directory, not a file: {path}")
        raw = base64.b64decode(str(data.get("content") or "").encode("ascii"))
        return GitHubFile(
            path=str(data.get("path") or path),
            content=raw.decode("utf-8", errors="replace"),
            sha=str(data["sha"]) if data.get("sha") else None,
        )

    def get_file_sha(self, *, path: str, ref: str) -> Optional[str]:
        f = self.get_file(path=path, ref=ref)
        return f.sha if f else None

    def upsert_file(
        self,
        *,
        path: str,
        content_text: str,
        branch: str,
        message: str,
        known_sha: Optional[str] = None,
    ) -> None:
        b64 = base64.b64encode(content_text.encode("utf-8")).decode("ascii")
        payload: Dict[str, Any] = {"message": message, "content": b64, "branch": branch}
        if known_sha:
            payload["sha"] = known_sha
        with self._client() as c:
            r = c.put(self._url(f"/contents/{path.lstrip('/')}"), headers=self._headers(), json=payload)
            r.raise_for_status()

    def find_open_pull_request(self, *, head: str) -> Optional[Dict[str, Any]]:
        params = {"head": f"{self.owner}:{head}", "state": "open"}
        with self._client() as c:
            r = c.get(self._url("/pulls"), headers=self._headers(), params=params)
            r.raise_for_status()
            data = r.json()
        if isinstance(data, list) and data:
            return data[0]
        return None

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> Dict[str, Any]:
        payload = {"title": title, "body": body, "head": head, "base": base}
        with self._client() as c:
            r = c.post(self._url("/pulls"), headers=self._headers(), json=payload)
            if r.status_code == 422 and "already exists" in r.text.lower():
                existing = self.find_open_pull_request(head=head)
                if existing is not None:
                    return existing
            r.raise_for_status()
            return r.json()

    def add_labels(self, *, issue_number: int, labels: List[str]) -> None:
        if not labels:
            return
        with self._client() as c:
            r = c.post(self._url(f"/issues/{int(issue_number)}/labels"), headers=self._headers(), json={"labels": labels})
            r.raise_for_status()

    def create_issue(self, *, title: str, body: str, labels: Optional[List[str]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        with self._client() as c:
            r = c.post(self._url("/issues"), headers=self._headers(), json=payload)
            r.raise_for_status()
            return r.json()

    def list_run_jobs(self, *, run_id: str) -> List[Dict[str, Any]]:
        with self._client() as c:
            r = c.get(self._url(f"/actions/runs/{run_id}/jobs"), headers=self._headers())
            r.raise_for_status()
            data = r.json()
        jobs = data.get("jobs") if isinstance(data, dict) else None
        return [j for j in (jobs or []) if isinstance(j, dict)]

    def download_job_log(self, *, job_id: str) -> str:
        # The API answers with a 302 to a short-lived blob URL.
        with self._client(follow_redirects=True) as c:
            r = c.get(self._url(f"/actions/jobs/{job_id}/logs"), headers=self._headers())
            r.raise_for_status()
            return r.text
