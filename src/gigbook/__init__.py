"""Gigbook: engagement lifecycle engine for freelance work."""

__version__ = "0.1.0"
