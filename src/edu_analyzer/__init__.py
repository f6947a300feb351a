"""Bulk content evaluation with LLM-backed scoring runs."""

__version__ = "0.3.0"
