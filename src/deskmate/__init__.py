"""Deskmate: a personal desktop assistant with a layered knowledge base."""

__version__ = "0.1.0"
