"""OAuth2 authentication redirector."""

__version__ = "0.1.0"
