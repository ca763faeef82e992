from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from codeautopsy.errors import LogUnavailableError, PublishError, RetrievalError
from codeautopsy.gitops.github_rest import GitHubRestClient
from codeautopsy.gitops.render import fix_branch_name
from codeautopsy.models import FailureEvent, PublishedRef, RetrievedFile
from codeautopsy.parsers.language import detect_from_path


@dataclass(frozen=True)
class GitHubAccess:
    """Credentials + transport shared by the GitHub-backed collaborators; hands out per-repo clients."""

    token: str
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    def client(self, repo_full_name: str) -> GitHubRestClient:
        return GitHubRestClient(
            token=self.token,
            repo=repo_full_name,
            api_base=self.api_base,
            timeout_s=self.timeout_s,
            transport=self.transport,
        )


def failed_steps_summary(job: Dict[str, Any]) -> str:
    """Stand-in log text when the job log itself cannot be downloaded."""
    out: List[str] = []
    for step in job.get("steps") or []:
        if isinstance(step, dict) and step.get("conclusion") == "failure":
            out.append(f"Step \"{step.get('name')}\" failed at {step.get('completed_at') or 'unknown time'}")
    out.append(f"Job \"{job.get('name')}\" failed with conclusion: {job.get('conclusion')}")
    return "\n".join(out)


@dataclass(frozen=True)
class GitHubLogSource:
    access: GitHubAccess

    def fetch_build_log(self, repo_full_name: str, run_id: str, *, job_id: Optional[str] = None) -> Optional[str]:
        gh = self.access.client(repo_full_name)
        try:
            if job_id:
                return gh.download_job_log(job_id=str(job_id))
            jobs = gh.list_run_jobs(run_id=str(run_id))
        except httpx.HTTPError as e:
            raise LogUnavailableError(f"log fetch failed for {repo_full_name} run {run_id}: {e}") from e

        failed = [j for j in jobs if j.get("conclusion") == "failure"]
        if not failed:
            return None
        parts: List[str] = []
        for job in failed:
            try:
                parts.append(gh.download_job_log(job_id=str(job.get("id"))))
            except httpx.HTTPError:
                parts.append(failed_steps_summary(job))
        return "\n".join(parts)


@dataclass(frozen=True)
class GitHubCodeRetriever:
    access: GitHubAccess

    def fetch_file(self, repo_full_name: str, path: str, ref: str) -> RetrievedFile:
        try:
            f = self.access.client(repo_full_name).get_file(path=path, ref=ref)
        except (httpx.HTTPError, ValueError) as e:
            raise RetrievalError(f"could not fetch {path}@{ref[:7]}: {e}") from e
        if f is None:
            raise RetrievalError(f"File not found: {path}")
        return RetrievedFile(path=f.path, content=f.content, revision_id=f.sha, ref=ref, language=detect_from_path(f.path))


@dataclass(frozen=True)
class GitHubPublisher:
    """
    Opens fix PRs and manual-review issues. Every step tolerates a previous partial run:
    the branch name is deterministic, an existing branch is reused and an existing PR is returned.
    """

    access: GitHubAccess

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
        gh = self.access.client(event.repo_full_name)
        branch = fix_branch_name(event)
        try:
            base_branch = gh.get_repo_default_branch()
            gh.create_branch(new_branch=branch, from_sha=base_sha or event.commit_sha)
            current_sha = gh.get_file_sha(path=file_path, ref=branch)
            gh.upsert_file(
                path=file_path,
                content_text=fixed_content,
                branch=branch,
                message=title,
                known_sha=current_sha,
            )
            pr = gh.create_pull_request(title=title, body=body, head=branch, base=base_branch)
        except (httpx.HTTPError, ValueError) as e:
            raise PublishError(f"pull request failed for {event.repo_full_name}: {e}") from e

        number = int(pr["number"])
        try:
            gh.add_labels(issue_number=number, labels=labels)
        except httpx.HTTPError:
            # Labels are cosmetic; the PR exists.
            pass
        return PublishedRef(kind="pr", url=str(pr["html_url"]), id=number, branch_name=branch, mode="real")

    def open_issue(self, event: FailureEvent, *, title: str, body: str, labels: list[str]) -> PublishedRef:
        try:
            issue = self.access.client(event.repo_full_name).create_issue(title=title, body=body, labels=labels)
        except httpx.HTTPError as e:
            raise PublishError(f"issue creation failed for {event.repo_full_name}: {e}") from e
        return PublishedRef(kind="issue", url=str(issue["html_url"]), id=int(issue["number"]), mode="real")
