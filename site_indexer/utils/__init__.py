"""
Utility modules for the site indexer.
"""

from .config import Config, ConfigManager, SiteConfig, load_config

__all__ = ['Config', 'ConfigManager', 'SiteConfig', 'load_config']
