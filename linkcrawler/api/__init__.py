"""
HTTP interface for crawl requests.
"""

from .server import ApiServer, create_app

__all__ = ['ApiServer', 'create_app']
