"""Collaborator adapters for agento (LLM backends)."""
