"""
Unit tests for configuration loading.
"""

import json
import os
from unittest.mock import patch

import pytest
import yaml

from shelfscout.config import Config, RotationConfig, load_proxy_entries, load_user_agents


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.queue.concurrency == 3
        assert config.queue.max_retries == 2
        assert config.crawler.max_depth == 1
        assert config.crawler.max_urls == 10
        assert config.ingress.rate_limit == 60
        assert config.notifier.webhook_url is None

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "shelfscout.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "queue": {"db_path": str(tmp_path / "q.db"), "concurrency": 5},
                    "crawler": {"max_depth": 2},
                    "notifier": {"webhook_url": "http://hooks.test/events"},
                }
            )
        )

        config = Config.from_yaml(path)

        assert config.queue.concurrency == 5
        assert config.queue.db_path == tmp_path / "q.db"
        assert config.crawler.max_depth == 2
        assert config.notifier.webhook_url == "http://hooks.test/events"

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(path).queue.concurrency == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_environment_overrides(self):
        with patch.dict(os.environ, {"SHELFSCOUT_QUEUE__CONCURRENCY": "7", "SHELFSCOUT_INGRESS__RATE_LIMIT": "5"}):
            config = Config()
        assert config.queue.concurrency == 7
        assert config.ingress.rate_limit == 5

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            Config.model_validate({"queue": {"concurrency": 0}})

    def test_manual_attempts_must_cover_automatic_retries(self):
        with pytest.raises(ValueError):
            Config.model_validate({"queue": {"max_retries": 5, "max_manual_attempts": 3}})

    def test_stall_threshold_outlasts_job_timeout(self):
        queue = Config().queue
        assert queue.stall_threshold_seconds > queue.job_timeout_seconds

        with pytest.raises(ValueError):
            Config.model_validate({"queue": {"job_timeout_seconds": 120, "stall_threshold_seconds": 60}})
        with pytest.raises(ValueError):
            Config.model_validate({"queue": {"job_timeout_seconds": 60, "stall_threshold_seconds": 60}})


class TestRotationSources:
    def test_inline_lists(self):
        rotation = RotationConfig(proxies=[{"host": "10.0.0.1", "port": 8001}], user_agents=["agent-a"])
        assert [p.host for p in load_proxy_entries(rotation)] == ["10.0.0.1"]
        assert load_user_agents(rotation) == ["agent-a"]

    def test_json_file_with_key(self, tmp_path):
        proxies = tmp_path / "proxies.json"
        proxies.write_text(
            json.dumps(
                {
                    "proxies": [
                        {"host": "10.0.0.1", "port": 8001, "protocol": "http"},
                        {"host": "10.0.0.2", "port": 8002, "username": "u", "password": "p"},
                    ]
                }
            )
        )
        agents = tmp_path / "agents.json"
        agents.write_text(json.dumps({"userAgents": ["agent-a", "agent-b"]}))
        rotation = RotationConfig(proxies_file=proxies, user_agents_file=agents, user_agents=["ignored"])

        entries = load_proxy_entries(rotation)
        assert [(e.host, e.port) for e in entries] == [("10.0.0.1", 8001), ("10.0.0.2", 8002)]
        assert entries[1].username == "u"
        assert load_user_agents(rotation) == ["agent-a", "agent-b"]

    def test_yaml_bare_list(self, tmp_path):
        agents = tmp_path / "agents.yaml"
        agents.write_text("- agent-a\n- agent-b\n")
        assert load_user_agents(RotationConfig(user_agents_file=agents)) == ["agent-a", "agent-b"]

    def test_malformed_file(self, tmp_path):
        proxies = tmp_path / "proxies.json"
        proxies.write_text(json.dumps({"proxies": {"host": "10.0.0.1"}}))
        with pytest.raises(ValueError):
            load_proxy_entries(RotationConfig(proxies_file=proxies))
