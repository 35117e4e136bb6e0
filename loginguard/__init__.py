"""Login abuse protection service: throttling, lockout and one-time codes."""

__version__ = "0.1.0"
