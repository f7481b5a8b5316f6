"""Input validation and CLI output helpers."""
