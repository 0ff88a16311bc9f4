"""Bridge contact-platform conversations to per-conversation ticket channels."""

__version__ = "0.1.0"
