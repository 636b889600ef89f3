"""LangBridge: timed audio lessons for language practice."""

__version__ = "0.1.0"
