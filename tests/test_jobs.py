import subprocess
from unittest import mock

from backend import run_ingestion
from runner.jobs import classify_pending, collect_sources


def test_runner_executes_jobs_in_order():
    with mock.patch.object(run_ingestion.subprocess, "run") as run:
        rc = run_ingestion.main([])

    assert rc == 0
    modules = [call.args[0][2] for call in run.call_args_list]
    assert modules == ["runner.jobs.collect_sources", "runner.jobs.classify_pending"]


def test_runner_reports_failures_and_timeouts(monkeypatch):
    monkeypatch.setenv("COLLECT_JOB_TIMEOUT", "5")

    def fake_run(cmd, **kwargs):
        if cmd[2] == "runner.jobs.collect_sources":
            assert kwargs["timeout"] == 5
            raise subprocess.TimeoutExpired(cmd, 5)
        raise subprocess.CalledProcessError(3, cmd)

    with mock.patch.object(run_ingestion.subprocess, "run", side_effect=fake_run):
        assert run_ingestion.main([]) == 1


def test_runner_only_and_force():
    with mock.patch.object(run_ingestion.subprocess, "run") as run:
        run_ingestion.main(["--only", "collect_sources", "--force"])

    assert run.call_count == 1
    assert run.call_args.args[0][2:] == ["runner.jobs.collect_sources", "--force"]


def test_collect_job_exit_codes(monkeypatch):
    monkeypatch.setattr("sys.argv", ["collect_sources"])
    monkeypatch.setattr(collect_sources, "get_repositories", lambda: None)
    monkeypatch.setattr(collect_sources, "get_settings", lambda: None)
    summary = {"total_sources": 2, "total_collected": 5, "total_errors": 1, "results": []}
    with mock.patch.object(collect_sources, "collect_from_all_sources", return_value={"data": summary}):
        assert collect_sources.main() == 0

    summary = {"total_sources": 2, "total_collected": 0, "total_errors": 2, "results": []}
    with mock.patch.object(collect_sources, "collect_from_all_sources", return_value={"data": summary}):
        assert collect_sources.main() == 1


def test_classify_job_runs_batch(monkeypatch):
    monkeypatch.setattr("sys.argv", ["classify_pending", "--batch-size", "4"])
    monkeypatch.setattr(classify_pending, "get_repositories", lambda: "repos")
    monkeypatch.setattr(classify_pending, "get_settings", lambda: "settings")
    monkeypatch.setattr(classify_pending, "is_ollama_healthy", lambda: False)
    result = {"success": True, "data": {"processed": 4, "successful": 4, "errors": 0}}
    with mock.patch.object(classify_pending, "classify_batch", return_value=result) as batch:
        assert classify_pending.main() == 0
    batch.assert_called_once_with("repos", "settings", 4)
