"""Configuration models and loaders."""

from .config import (
    Config,
    CrawlerConfig,
    IngressConfig,
    MonitoringConfig,
    NotifierConfig,
    ProxyEntry,
    QueueConfig,
    RotationConfig,
    find_config_file,
    load_proxy_entries,
    load_user_agents,
)

__all__ = [
    "Config",
    "CrawlerConfig",
    "IngressConfig",
    "MonitoringConfig",
    "NotifierConfig",
    "ProxyEntry",
    "QueueConfig",
    "RotationConfig",
    "find_config_file",
    "load_proxy_entries",
    "load_user_agents",
]
