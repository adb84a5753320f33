"""
Configuration management for ShelfScout using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class QueueConfig(BaseModel):
    """Job queue, worker pool and recovery sweeps."""

    db_path: Path = Field(default=Path("./data/jobs.db"), description="SQLite file holding job records.")
    concurrency: int = Field(default=3, ge=1, description="Maximum number of jobs active at once.")
    max_retries: int = Field(default=2, ge=0, description="Automatic retries after the first attempt.")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="First retry backoff in seconds.")
    retry_max_delay: float = Field(default=60.0, ge=0.0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    max_manual_attempts: int = Field(default=10, ge=1, description="Ceiling on attempts including manual retries.")
    job_timeout_seconds: float = Field(default=60.0, gt=0.0, description="Hard ceiling on a single attempt.")
    poll_interval: float = Field(default=1.0, gt=0.0, description="Idle worker poll interval in seconds.")
    stall_threshold_seconds: float = Field(
        default=90.0, gt=0.0, description="Idle time after which an active job counts as stalled."
    )
    stall_check_interval: float = Field(default=15.0, gt=0.0)
    requeue_stalled: bool = Field(default=False, description="Requeue stalled jobs instead of failing them.")
    retention_seconds: float = Field(default=24 * 3600.0, gt=0.0, description="Terminal job retention TTL.")
    retention_check_interval: float = Field(default=3600.0, gt=0.0)

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        path = Path(v)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        return path

    @model_validator(mode="after")
    def _check_stall_threshold(self) -> QueueConfig:
        # A running attempt reports no progress until it finishes, so the stall
        # threshold must outlast the hard timeout or every slow job looks stalled.
        if self.stall_threshold_seconds <= self.job_timeout_seconds:
            raise ValueError("queue.stall_threshold_seconds must exceed queue.job_timeout_seconds")
        return self


class ProxyEntry(BaseModel):
    host: str
    port: int = Field(gt=0, lt=65536)
    protocol: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None


class RotationConfig(BaseModel):
    """Proxy and user-agent sources. Files take precedence over inline lists."""

    proxies_file: Optional[Path] = Field(default=None, description="JSON/YAML file with a 'proxies' list.")
    proxies: List[ProxyEntry] = Field(default_factory=list)
    user_agents_file: Optional[Path] = Field(default=None, description="JSON/YAML file with a 'userAgents' list.")
    user_agents: List[str] = Field(default_factory=list)


class CrawlerConfig(BaseModel):
    """URL discovery defaults."""

    max_depth: int = Field(default=1, ge=0)
    max_urls: int = Field(default=10, gt=0)
    page_timeout_seconds: float = Field(default=30.0, gt=0.0, description="Per-request render timeout.")
    crawl_timeout_seconds: float = Field(default=30.0, gt=0.0, description="Wall-clock ceiling per crawl.")
    request_delay_seconds: float = Field(default=1.0, ge=0.0, description="Politeness delay between fetches.")
    max_connections: int = Field(default=10, ge=1)
    verify_ssl: bool = True


class IngressConfig(BaseModel):
    """Submission boundary protection."""

    rate_limit: int = Field(default=60, ge=1, description="Requests allowed per window and client.")
    window_seconds: float = Field(default=60.0, gt=0.0)
    max_tracked_clients: int = Field(default=10_000, ge=1, description="Client count that triggers compaction.")
    dedup_window_seconds: float = Field(default=5.0, gt=0.0)
    dedup_max_entries: int = Field(default=1000, ge=1, description="Cache size that triggers a purge.")
    dedup_retention_seconds: float = Field(default=300.0, gt=0.0)


class NotifierConfig(BaseModel):
    """Outbound event webhook."""

    webhook_url: Optional[str] = Field(default=None, description="Webhook endpoint. None disables delivery.")
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=5.0, gt=0.0)
    retry_count: int = Field(default=1, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    pending_max_age_seconds: float = Field(default=300.0, gt=0.0)
    log_events: bool = Field(default=True, description="Also log every lifecycle event.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "ShelfScout"
    queue: QueueConfig = Field(default_factory=QueueConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    ingress: IngressConfig = Field(default_factory=IngressConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SHELFSCOUT_", env_nested_delimiter="__", case_sensitive=False)

    @model_validator(mode="after")
    def _check_retry_ceiling(self) -> Config:
        if self.queue.max_manual_attempts < self.queue.max_retries + 1:
            raise ValueError("queue.max_manual_attempts must allow at least max_retries + 1 attempts")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("shelfscout.yaml", "shelfscout.yml", "config.yaml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def load_list_file(path: Path, key: str) -> List[Any]:
    """Load a list from a JSON or YAML file.

    The file may hold the list directly or a mapping with the list under *key*
    (``{"proxies": [...]}``, ``{"userAgents": [...]}``).
    """
    with open(path, "r", encoding="utf-8") as f:
        # YAML is a superset of JSON, so one loader covers both formats.
        data = yaml.safe_load(f)
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list under '{key}' in {path}")
    log.info("Loaded %d entries from %s", len(data), path)
    return data


def load_proxy_entries(config: RotationConfig) -> List[ProxyEntry]:
    if config.proxies_file is not None:
        raw: List[Dict[str, Any]] = load_list_file(config.proxies_file, "proxies")
        return [ProxyEntry.model_validate(item) for item in raw]
    return list(config.proxies)


def load_user_agents(config: RotationConfig) -> List[str]:
    if config.user_agents_file is not None:
        return [str(ua) for ua in load_list_file(config.user_agents_file, "userAgents")]
    return list(config.user_agents)
