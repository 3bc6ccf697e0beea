"""Greatshield: real-time moderation decision engine for Discord."""

__version__ = "0.1.0"
