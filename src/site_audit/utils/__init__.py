"""
Utility modules for the site audit crawler.
"""

from .config import Config, ConfigError, ConfigManager, load_config, get_config

__all__ = ['Config', 'ConfigError', 'ConfigManager', 'load_config', 'get_config']
