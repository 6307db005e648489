"""Persistence and change detection for virtualization cluster state."""

__version__ = "0.1.0"
