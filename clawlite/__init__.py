"""Chat assistant building blocks and a WSGI chat endpoint backed by the codex CLI."""

__version__ = "0.1.0"