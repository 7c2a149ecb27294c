"""Adapters for external processes and collaborators."""
