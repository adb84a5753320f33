"""
ShelfScout - job orchestration and anti-block coordination for product scraping.

Provides a durable job queue with a bounded worker pool, stall and retry
recovery, proxy and user agent rotation with ban tracking, and a
depth-bounded crawler for discovering product URLs.
"""

__version__ = "0.1.0"

from shelfscout.config import Config
from shelfscout.container import DependencyContainer
from shelfscout.crawler import Crawler
from shelfscout.jobs import JobQueue

__all__ = ["Config", "Crawler", "DependencyContainer", "JobQueue", "__version__"]
