"""Shared library for the Campus Vote services."""

__version__ = "1.0.0"
