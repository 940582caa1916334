"""Declarative multi-agent workflow ("ensemble") execution engine."""

__version__ = "0.1.0"
