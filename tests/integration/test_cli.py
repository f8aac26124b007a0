"""Integration tests for the click entrypoint."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from click.testing import CliRunner

import nightlife_etl.crawl as crawl_module
from nightlife_etl.cli import main
from nightlife_etl.source_client import TransportError

ENV = {
    "DB_DSN": "",
    "SLACK_WEBHOOK_URL": "",
    "SOUNDCLOUD_CLIENT_ID": "",
    "SOUNDCLOUD_CLIENT_SECRET": "",
}


def _config(tmp_path) -> str:
    path = tmp_path / "crawler.yml"
    path.write_text(f"report_dir: {tmp_path / 'reports'}\nenrich_artists: false\n", encoding="utf-8")
    return str(path)


def _report(tmp_path, run_id: str) -> dict:
    return json.loads((tmp_path / "reports" / f"{run_id}.json").read_text())


class FailingListingSource:
    def __init__(self, **kwargs) -> None:
        pass

    def fetch(self, query: dict) -> dict:
        if query["operationName"] == "GET_VENUE":
            return {"venue": {"id": query["variables"]["id"], "name": "Tresor"}}
        raise TransportError(503, "unavailable")


class BrokenSource:
    def __init__(self, **kwargs) -> None:
        pass

    def fetch(self, query: dict) -> dict:
        raise RuntimeError("decoder blew up")


class TestCli:
    def test_idle_run_exits_zero(self, db_conn, tmp_path):
        _, dsn = db_conn
        result = CliRunner().invoke(
            main,
            ["--db-dsn", dsn, "--config", _config(tmp_path), "--run-id", "run-idle", "--no-notify"],
            env=ENV,
        )
        assert result.exit_code == 0, result.output
        report = _report(tmp_path, "run-idle")
        assert report["mode"] == "crawl_next_venue"
        assert report["status"] == "idle"

    def test_listing_failure_exits_one(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        venue_id = conn.execute(
            "INSERT INTO pages (ra_id, page_type, name, handle) VALUES ('5031', 'venue', 'Tresor', 'tresor') RETURNING id"
        ).fetchone()[0]
        due = datetime.now(timezone.utc) - timedelta(hours=1)
        conn.execute(
            "INSERT INTO venue_crawling_status (venue_id, next_crawl_at) VALUES (%s, %s)",
            (venue_id, due),
        )
        monkeypatch.setattr(crawl_module, "SourceClient", FailingListingSource)

        result = CliRunner().invoke(
            main,
            ["--db-dsn", dsn, "--config", _config(tmp_path), "--run-id", "run-fail", "--no-notify"],
            env=ENV,
        )

        assert result.exit_code == 1
        assert _report(tmp_path, "run-fail")["status"] == "failed"
        next_at = conn.execute("SELECT next_crawl_at FROM venue_crawling_status").fetchone()[0]
        assert next_at > due + timedelta(days=6)

    def test_unexpected_error_reports_failure(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        venue_id = conn.execute(
            "INSERT INTO pages (ra_id, page_type, name, handle) VALUES ('5031', 'venue', 'Tresor', 'tresor') RETURNING id"
        ).fetchone()[0]
        conn.execute(
            "INSERT INTO venue_crawling_status (venue_id, next_crawl_at) VALUES (%s, %s)",
            (venue_id, datetime.now(timezone.utc) - timedelta(hours=1)),
        )
        monkeypatch.setattr(crawl_module, "SourceClient", BrokenSource)

        result = CliRunner().invoke(
            main,
            ["--db-dsn", dsn, "--config", _config(tmp_path), "--run-id", "run-boom", "--no-notify"],
            env=ENV,
        )

        assert result.exit_code == 1
        report = _report(tmp_path, "run-boom")
        assert report["status"] == "failed"
        assert report["message"] == "unexpected error: RuntimeError: decoder blew up"
        next_at = conn.execute("SELECT next_crawl_at FROM venue_crawling_status").fetchone()[0]
        assert next_at > datetime.now(timezone.utc) + timedelta(days=6)

    def test_unreachable_store_exits_one(self, tmp_path):
        result = CliRunner().invoke(
            main,
            [
                "--db-dsn", "host=127.0.0.1 port=1 dbname=none user=none connect_timeout=1",
                "--config", _config(tmp_path), "--run-id", "run-nodb",
            ],
            env=ENV,
        )
        assert result.exit_code == 1
        assert _report(tmp_path, "run-nodb")["status"] == "failed"

    def test_scan_area_requires_area_id(self, tmp_path):
        result = CliRunner().invoke(
            main, ["--mode", "scan_area", "--config", _config(tmp_path)], env=ENV
        )
        assert result.exit_code == 1

    def test_invalid_settings_exit_one(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("recrawl_interval_days: 0\n", encoding="utf-8")
        result = CliRunner().invoke(main, ["--config", str(path)], env=ENV)
        assert result.exit_code == 1
