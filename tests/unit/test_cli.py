"""
Tests for the command-line interface.
"""

import json

import pytest
from aioresponses import aioresponses
from click.testing import CliRunner

from shelfscout import cli as cli_module
from shelfscout.cli import cli

PRODUCT_URL = "https://shop.test/p/1"
PRODUCT_HTML = '<html><body><h1>Kettle</h1><span class="price">$30</span></body></html>'


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    # Keep the global structlog configuration untouched between tests.
    monkeypatch.setattr(cli_module, "configure_logging", lambda config: None)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "shelfscout.yaml"
    path.write_text(
        f"queue:\n"
        f"  db_path: {tmp_path / 'jobs.db'}\n"
        f"  poll_interval: 0.02\n"
        f"  max_retries: 0\n"
        f"notifier:\n"
        f"  log_events: false\n"
    )
    return path


def invoke(config_file, *args):
    result = CliRunner().invoke(cli, ["--config", str(config_file), *args], obj={})
    return result


def parse_json(output):
    return json.loads(output)


class TestCli:
    def test_submit_without_wait(self, config_file):
        result = invoke(config_file, "submit", PRODUCT_URL)

        assert result.exit_code == 0, result.output
        body = parse_json(result.output)
        assert len(body["jobIds"]) == 1
        assert body["rateLimit"]["allowed"] is True

    def test_submit_and_wait(self, config_file):
        with aioresponses() as mocked:
            mocked.get(PRODUCT_URL, status=200, body=PRODUCT_HTML, content_type="text/html")
            result = invoke(config_file, "submit", PRODUCT_URL, "--selector", "title=h1", "--wait")

        assert result.exit_code == 0, result.output
        (job,) = parse_json(result.output)
        assert job["state"] == "completed"
        assert job["result"]["title"] == "Kettle"

    def test_status_of_unknown_job(self, config_file):
        result = invoke(config_file, "status", "missing")

        assert result.exit_code != 0
        assert "JobNotFound" in result.output

    def test_bad_selector(self, config_file):
        result = invoke(config_file, "submit", PRODUCT_URL, "--selector", "no-equals-sign")

        assert result.exit_code == 2
        assert "NAME=SELECTOR" in result.output

    def test_jobs_table(self, config_file):
        invoke(config_file, "submit", PRODUCT_URL)

        result = invoke(config_file, "jobs", "--state", "waiting")

        assert result.exit_code == 0, result.output
        assert "waiting=1" in result.output

    def test_health(self, config_file):
        result = invoke(config_file, "health")

        assert result.exit_code == 0, result.output
        body = parse_json(result.output)
        assert body["is_running"] is True
        assert body["jobs"]["waiting"] == 0

    def test_discover(self, config_file):
        listing = '<html><body><a href="/p/1">1</a><a href="/p/2">2</a><a href="/about">x</a></body></html>'
        with aioresponses() as mocked:
            mocked.get("https://shop.test/list", status=200, body=listing, content_type="text/html")
            result = invoke(config_file, "discover", "https://shop.test/list", "--pattern", "/p/")

        assert result.exit_code == 0, result.output
        body = parse_json(result.output)
        assert body["urls"] == ["https://shop.test/p/1", "https://shop.test/p/2"]
        assert body["timedOut"] is False
        assert body["aborted"] is False
