"""Stylo backend package: style-imitation training with spaced repetition."""
