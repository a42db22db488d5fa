"""Gemini Web MCP - Gemini (gemini.google.com) via browser cookies."""

__version__ = "0.1.0"
