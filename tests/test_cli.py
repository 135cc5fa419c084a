from __future__ import annotations

from typer.testing import CliRunner

from merchwatch.cli import cli
from merchwatch.state import SqliteStore

runner = CliRunner()


def test_jobs_dry_run_lists_every_job() -> None:
    result = runner.invoke(cli, ["jobs", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "crawl" in result.output
    assert "serp" in result.output
    assert "metrics" in result.output


def test_jobs_rejects_unknown_job_name() -> None:
    result = runner.invoke(cli, ["jobs", "--only", "publish", "--dry-run"])

    assert result.exit_code == 2


def test_enqueue_writes_job_to_database(tmp_path, monkeypatch) -> None:
    db_path = tmp_path / "merchwatch.db"
    monkeypatch.setenv("MERCHWATCH_DATABASE_PATH", str(db_path))

    result = runner.invoke(cli, ["enqueue", "cat mom", "--alias", "de", "--priority", "3"])

    assert result.exit_code == 0, result.output
    assert '"jobIds"' in result.output
    store = SqliteStore(db_path)
    try:
        job = store.get_serp_job(1)
    finally:
        store.close()
    assert (job.term, job.alias, job.priority, job.status) == ("cat mom", "de", 3, "pending")


def test_enqueue_without_alias_uses_configured_aliases(tmp_path, monkeypatch) -> None:
    db_path = tmp_path / "merchwatch.db"
    monkeypatch.setenv("MERCHWATCH_DATABASE_PATH", str(db_path))
    store = SqliteStore(db_path)
    try:
        store.save_keyword_settings({"aliases": ["us", "uk"]})
    finally:
        store.close()

    result = runner.invoke(cli, ["enqueue", "dog dad"])

    assert result.exit_code == 0, result.output
    store = SqliteStore(db_path)
    try:
        jobs = [store.get_serp_job(job_id) for job_id in (1, 2)]
    finally:
        store.close()
    assert [(job.term, job.alias) for job in jobs] == [("dog dad", "us"), ("dog dad", "uk")]
