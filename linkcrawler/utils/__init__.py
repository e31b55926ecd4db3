"""
Utility modules for the link crawler.
"""

from .config import Config, ConfigManager, load_config, get_config
from .retry import RetryPolicy

__all__ = ['Config', 'ConfigManager', 'load_config', 'get_config', 'RetryPolicy']
