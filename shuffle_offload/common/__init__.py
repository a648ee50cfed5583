"""Shared helpers for chunking and remote naming."""
