"""tokenchat - token-metered streaming AI chat service."""

__version__ = "1.0.0"
