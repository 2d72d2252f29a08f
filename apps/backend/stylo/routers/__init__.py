"""Router package exports."""

from . import health, train

__all__ = [
    "health",
    "train",
]
