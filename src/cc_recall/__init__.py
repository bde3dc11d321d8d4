"""cc-recall: index and search archived Claude Code conversations."""

__version__ = "0.1.0"
