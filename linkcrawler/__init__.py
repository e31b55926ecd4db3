"""
Link Crawler

Crawls outward from a seed URL to a bounded depth, storing the discovered
link graph and tracking crawl progress in a shared task queue.
"""

__version__ = "1.0.0"
__description__ = "A depth-bounded web crawler backed by a persistent link graph and task queue"
