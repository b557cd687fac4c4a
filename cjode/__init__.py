"""cjode - a coding agent that reads, searches, edits and runs commands in a workspace."""

__version__ = "0.1.0"
