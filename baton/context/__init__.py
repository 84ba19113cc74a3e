"""Shared cross-step memory and its summarization policy."""

from .store import SharedContextStore
from .summarizer import ContextSummarizer, estimate_tokens

__all__ = ["SharedContextStore", "ContextSummarizer", "estimate_tokens"]
