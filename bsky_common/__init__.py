"""Find the Bluesky accounts two users have in common."""

__version__ = "0.3.0"
