from unittest.mock import patch

import pytest

from content_pipeline.cli import main
from content_pipeline.jobs import JobType
from content_pipeline.runtime import build_runtime


def run_cli(*argv):
    with patch("sys.argv", ["content-pipeline", *argv]):
        main()


@pytest.fixture
def seeded(runtime, make_content):
    """Database with one pending audio pipeline and one failed job."""
    content = make_content("audio", "mp3")
    enqueued = runtime.enqueuer.enqueue_pipeline(content.id)
    webhook = runtime.enqueuer.enqueue_job(JobType.PROCESS_WEBHOOK, {}).job_ids[0]
    runtime.store.claim(webhook, "w1")
    runtime.store.fail(webhook, 1, "endpoint returned 500")
    return runtime, enqueued.job_ids, webhook


def test_cli_help_displays():
    """Test --help works without errors."""
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--help")
    assert exc_info.value.code == 0


@pytest.mark.parametrize("command", ["serve", "worker", "run", "plan", "jobs"])
def test_cli_subcommand_help(command):
    with pytest.raises(SystemExit) as exc_info:
        run_cli(command, "--help")
    assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    assert "usage:" in capsys.readouterr().out.lower()


def test_plan_video(capsys):
    run_cli("plan", "recording", "mp4")
    out = capsys.readouterr().out
    assert out.splitlines() == [
        "1. extract_audio",
        "2. transcribe",
        "3. doc_generate",
        "4. generate_embeddings",
    ]


def test_plan_unsupported(capsys):
    run_cli("plan", "spreadsheet", "xlsx")
    assert "No processing stages" in capsys.readouterr().out


def test_jobs_list(capsys, seeded, temp_db):
    runtime, job_ids, webhook = seeded
    run_cli("--db", temp_db, "jobs", "list")
    out = capsys.readouterr().out

    assert all(job_id in out for job_id in job_ids + [webhook])
    assert "Showing 4 of 4 jobs" in out


def test_jobs_list_filtered(capsys, seeded, temp_db):
    runtime, job_ids, webhook = seeded
    run_cli("--db", temp_db, "jobs", "list", "--status", "failed")
    out = capsys.readouterr().out

    assert webhook in out
    assert "Showing 1 of 1 jobs" in out


def test_jobs_show(capsys, seeded, temp_db):
    runtime, job_ids, webhook = seeded
    run_cli("--db", temp_db, "jobs", "show", webhook)
    out = capsys.readouterr().out

    assert '"status": "failed"' in out
    assert "processing -> failed  (endpoint returned 500)" in out


def test_jobs_show_missing(capsys, temp_db):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", temp_db, "jobs", "show", "nope")
    assert exc_info.value.code == 1
    assert "Job not found" in capsys.readouterr().out


def test_jobs_metrics(capsys, seeded, temp_db):
    run_cli("--db", temp_db, "jobs", "metrics")
    out = capsys.readouterr().out

    assert "JOB METRICS" in out
    assert "Pending:" in out
    assert "Failed:" in out


def test_jobs_retry(capsys, seeded, temp_db):
    runtime, job_ids, webhook = seeded
    run_cli("--db", temp_db, "jobs", "retry", webhook)

    assert "reset to pending" in capsys.readouterr().out
    assert runtime.store.get(webhook).status.value == "pending"


def test_jobs_retry_rejected(capsys, seeded, temp_db):
    runtime, job_ids, webhook = seeded
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", temp_db, "jobs", "retry", job_ids[0])
    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().out


def test_run_unknown_content(capsys, temp_db):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", temp_db, "run", "missing-content")
    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().out


def test_worker_once(capsys, config, providers, temp_db):
    """One worker tick runs the due standalone job."""
    runtime = build_runtime(config, providers=providers)
    runtime.enqueuer.enqueue_job(JobType.PROCESS_WEBHOOK, {"event": "ping"})

    with patch("content_pipeline.cli.build_runtime", return_value=runtime):
        run_cli("--db", temp_db, "worker", "--once")

    out = capsys.readouterr().out
    assert "completed" in out
    assert "Processed 1 jobs" in out
