"""
Crawl engine components.
"""

from .fetcher import WebFetcher, FetchResult, FetchError
from .parser import ContentParser, ParsedPage
from .normalizer import normalize_link, normalize_links, normalize_root_url, InvalidURLError
from .results import count_hosts, CrawlNotCompletedError
from .scheduler import CrawlerScheduler

__all__ = [
    'WebFetcher', 'FetchResult', 'FetchError',
    'ContentParser', 'ParsedPage',
    'normalize_link', 'normalize_links', 'normalize_root_url', 'InvalidURLError',
    'count_hosts', 'CrawlNotCompletedError',
    'CrawlerScheduler'
]
