"""Email Search Agent - incremental mailbox ingestion and semantic search.

This package pulls a user's mail from Gmail, filters out bulk and automated
messages, chunks and embeds the remaining text and serves nearest-neighbour
search over the resulting index.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from email_search_agent.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
