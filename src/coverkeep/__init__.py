"""coverkeep - durable cover image acquisition for a game catalog."""

__version__ = "0.1.0"
