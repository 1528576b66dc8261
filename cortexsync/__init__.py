"""Sync Cortex platform configuration into a git-versioned file tree."""

__version__ = "0.1.0"
