"""Resilient client for a hierarchical cloud drive service."""

__version__ = "0.1.0"
