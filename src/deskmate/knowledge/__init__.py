"""Layered knowledge store with hybrid lexical + vector retrieval."""
