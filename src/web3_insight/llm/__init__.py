"""LLM and embedding backends."""
