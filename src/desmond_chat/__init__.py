"""Desmond chat client: session and streaming coordination for Gemini."""

__version__ = "0.1.0"
