"""Text normalization, HTML extraction and chunking."""

from email_search_agent.text.chunker import chunk, combine, estimate_tokens, validate_size
from email_search_agent.text.html import html_to_text
from email_search_agent.text.normalizer import normalize

__all__ = ["chunk", "combine", "estimate_tokens", "html_to_text", "normalize", "validate_size"]
