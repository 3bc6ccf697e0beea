"""Text-inference provider clients."""
