import os
from dotenv import load_dotenv

from .oauth.models import ServerConfig, TokenExpiry

load_dotenv()


def _as_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Settings:

    # General Settings
    PUBLIC_URL = os.getenv("AUTHFLOW_PUBLIC_URL", "http://localhost:4000")
    ISSUER = os.getenv("AUTHFLOW_ISSUER") or PUBLIC_URL
    PREFIX = os.getenv("AUTHFLOW_PREFIX", "oauth2/v1").strip("/")
    PORT = int(os.getenv("PORT", "4000"))

    ## Consent
    CONSENT_PAGE = os.getenv("AUTHFLOW_CONSENT_PAGE")
    AUTH_REQUEST_TTL = int(os.getenv("AUTHFLOW_AUTH_REQUEST_TTL") or 600)

    ## Token expiry (seconds)
    CODE_EXPIRY = int(os.getenv("AUTHFLOW_CODE_EXPIRY") or 30)
    ACCESS_TOKEN_EXPIRY = int(os.getenv("AUTHFLOW_ACCESS_TOKEN_EXPIRY") or 3600)
    ID_TOKEN_EXPIRY = int(os.getenv("AUTHFLOW_ID_TOKEN_EXPIRY") or 3600)

    ## Errors
    VERBOSE_ERRORS = _as_bool(os.getenv("AUTHFLOW_VERBOSE_ERRORS"))

    # Federated identity provider
    FIP_STRATEGY = os.getenv("FIP_STRATEGY", "openid")
    FIP_AUTHORIZATION_ENDPOINT = os.getenv("FIP_AUTHORIZATION_ENDPOINT", "")
    FIP_TOKEN_ENDPOINT = os.getenv("FIP_TOKEN_ENDPOINT", "")
    FIP_CLIENT_ID = os.getenv("FIP_CLIENT_ID")
    FIP_CLIENT_SECRET = os.getenv("FIP_CLIENT_SECRET")

    ## Persistence
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))

    ## Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE = os.getenv("LOG_FILE")


def get_server_config() -> ServerConfig:
    """
    Builds the value served by the `get_config` handler from Settings.
    `consent_page` is passed through unvalidated; the request validator owns that check.
    """
    return ServerConfig(
        consent_page=Settings.CONSENT_PAGE,
        iss=Settings.ISSUER,
        expiry=TokenExpiry(
            code=Settings.CODE_EXPIRY,
            access_token=Settings.ACCESS_TOKEN_EXPIRY,
            id_token=Settings.ID_TOKEN_EXPIRY,
        ),
    )


def settings_config_handler(previous, payload, context) -> ServerConfig:
    """`get_config` handler backed by the environment."""
    return get_server_config()
