from __future__ import annotations

import json

import pytest

from codeautopsy.errors import LogUnavailableError, RetrievalError
from codeautopsy.gitops.mock_github import LocalCodeRetriever, MockLogSource, MockPublisher
from codeautopsy.models import FailureEvent, Language


def _event(event_id: str = "0f1e2d3c-0000") -> FailureEvent:
    return FailureEvent(id=event_id, repo_full_name="octo/app", commit_sha="c0ffee1234567", run_id="77")


def test_mock_publisher_writes_pr_and_reuses_it_for_the_same_branch(tmp_path) -> None:
    pub = MockPublisher(root_dir=str(tmp_path), public_base_url="http://svc.test/")
    kwargs = dict(file_path="src/a.py", fixed_content="x = 1\n", base_sha=None, title="t", body="b", labels=["autopsy-fix"])
    first = pub.open_pull_request(_event(), **kwargs)
    assert first.mode == "mock"
    assert first.url == f"http://svc.test/mock/pr/{first.id}"

    meta = json.loads((tmp_path / "prs" / f"{first.id}.json").read_text(encoding="utf-8"))
    assert meta["base_sha"] == "c0ffee1234567"
    assert meta["fixed_content"] == "x = 1\n"

    again = pub.open_pull_request(_event(), **kwargs)
    assert again.id == first.id
    assert len(list((tmp_path / "prs").glob("*.json"))) == 1

    other = pub.open_pull_request(_event("99999999-0000"), **kwargs)
    assert other.id != first.id


def test_mock_publisher_issue(tmp_path) -> None:
    ref = MockPublisher(root_dir=str(tmp_path)).open_issue(_event(), title="t", body="b", labels=["bug"])
    assert ref.kind == "issue"
    assert (tmp_path / "issues" / f"{ref.id}.json").exists()


def test_local_retriever_reads_file_and_refuses_escape(tmp_path) -> None:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.go").write_text("package pkg\n", encoding="utf-8")
    r = LocalCodeRetriever(str(tmp_path / "pkg"))
    f = r.fetch_file("octo/app", "mod.go", "abc")
    assert f.content == "package pkg\n"
    assert f.language == Language.go
    assert f.ref == "abc"
    with pytest.raises(RetrievalError, match="escapes"):
        r.fetch_file("octo/app", "../outside.txt", "abc")
    with pytest.raises(RetrievalError, match="not found"):
        r.fetch_file("octo/app", "missing.go", "abc")


def test_mock_log_source_prefers_job_log(tmp_path) -> None:
    logs = tmp_path / "logs"
    logs.mkdir()
    (logs / "77.log").write_text("run log", encoding="utf-8")
    (logs / "77-5.log").write_text("job log", encoding="utf-8")
    src = MockLogSource(str(tmp_path))
    assert src.fetch_build_log("octo/app", "77", job_id="5") == "job log"
    assert src.fetch_build_log("octo/app", "77", job_id="6") == "run log"
    assert src.fetch_build_log("octo/app", "77") == "run log"
    assert src.fetch_build_log("octo/app", "78") is None


@pytest.mark.parametrize("run_id,job_id", [("../../secret", None), ("77", "../../../etc/hosts"), ("/etc/passwd", None)])
def test_mock_log_source_refuses_paths_outside_log_dir(tmp_path, run_id, job_id) -> None:
    (tmp_path / "logs").mkdir()
    (tmp_path / "secret.log").write_text("not a build log", encoding="utf-8")
    with pytest.raises(LogUnavailableError, match="escapes"):
        MockLogSource(str(tmp_path)).fetch_build_log("octo/app", run_id, job_id=job_id)
