"""Chat-platform adapters for the moderation engine."""
