"""Shipyard: unattended multi-stage development pipelines for batches of work items."""

__version__ = "0.1.0"
