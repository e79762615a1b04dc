import asyncio
import contextlib
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
import uvicorn

from .config import Settings, settings_config_handler
from .errors import OAuth2Error, oauth2_exception_handler, validation_exception_handler
from .logging_util import configure_logging_from_settings, get_logger
from .oauth.fip import OpenIdProvider, ProviderRegistry
from .oauth.handlers import HandlerSet
from .oauth.request_store import AuthRequestStore
from .persistence import InMemoryProvider, ttl_cleanup_task
from .routes import build_auth_router


logger = get_logger(__name__)


def default_providers() -> ProviderRegistry:
    """Identity providers configured through the FIP_* settings."""
    registry = ProviderRegistry()
    if Settings.FIP_CLIENT_ID and Settings.FIP_AUTHORIZATION_ENDPOINT and Settings.FIP_TOKEN_ENDPOINT:
        registry.register(OpenIdProvider(
            Settings.FIP_STRATEGY,
            authorization_endpoint=Settings.FIP_AUTHORIZATION_ENDPOINT,
            token_endpoint=Settings.FIP_TOKEN_ENDPOINT,
            client_id=Settings.FIP_CLIENT_ID,
            client_secret=Settings.FIP_CLIENT_SECRET,
        ))
    else:
        logger.info("No federated identity provider configured")
    return registry


def create_app(
    handlers: Optional[HandlerSet] = None,
    providers: Optional[ProviderRegistry] = None,
    request_store: Optional[AuthRequestStore] = None,
    prefix: Optional[str] = None,
) -> FastAPI:
    """
    Builds the service. Client, user and token handlers belong to the embedding
    application and are registered on `handlers` before the app is created;
    `get_config` and the pending auth request handlers are filled in from
    Settings when missing.
    """
    handlers = handlers if handlers is not None else HandlerSet()
    request_store = request_store or AuthRequestStore()
    if "get_config" not in handlers:
        handlers.on("get_config", settings_config_handler)
    if "generate_auth_request_code" not in handlers:
        request_store.install(handlers)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup = None
        if isinstance(request_store.store, InMemoryProvider):
            cleanup = asyncio.create_task(ttl_cleanup_task(request_store.store))
        try:
            yield
        finally:
            if cleanup:
                cleanup.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cleanup

    app = FastAPI(lifespan=lifespan)
    app.add_exception_handler(OAuth2Error, oauth2_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(build_auth_router(
        handlers,
        providers if providers is not None else default_providers(),
        prefix=prefix,
    ))
    return app


def main():
    configure_logging_from_settings(Settings)
    app = create_app()
    logger.info(f"Starting authorization server on port {Settings.PORT} (prefix: /{Settings.PREFIX})")
    uvicorn.run(app, host="0.0.0.0", port=Settings.PORT)

if __name__ == "__main__":
    main()
