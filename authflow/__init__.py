"""OAuth2 / OpenID Connect authorization flow orchestrator."""

__version__ = "0.1.0"
