"""Refinery - merge queue engine for parallel worker branches."""

__version__ = "0.1.0"
