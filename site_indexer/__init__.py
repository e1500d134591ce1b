"""
Site Indexer

Crawls configured websites concurrently and stores their pages for search indexing.
"""

__version__ = "1.0.0"
__description__ = "Concurrent site crawler that captures pages for search indexing"
