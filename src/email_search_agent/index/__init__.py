"""Relational persistence for indexed emails.

This package stores every message the pipeline has seen together with its
filter decision and embedding state, plus per-user sync cursors and filter
rules.
"""

from .repository import EmailRepository

__all__ = ["EmailRepository"]
