"""Real-time chat for barter exchanges."""

__version__ = "0.1.0"
