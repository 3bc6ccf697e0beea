"""Moderation decision engine: detectors, executor and the pipeline that composes them."""
