"""
OAuth2 error vocabulary and the Result type returned by every flow.

Validators raise the typed errors below. Flow entry points are decorated with
`catch_errors`, which turns anything raised into a failed `Result`, so callers
of the orchestrator branch on `result.ok` instead of catching exceptions.

Errors are chained explicitly: `wrap_errors` puts a stable top-level message
on top of the upstream errors and keeps the category of the first categorized
one, so a missing `state` three calls deep still surfaces as `invalid_request`.
"""

import functools
import time
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Optional, TypeVar

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .logging_util import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

GENERIC_SERVER_ERROR = "The server encountered an internal error and could not complete the request."


class OAuth2Error(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_server_error"

    def __init__(self, message: str, errors: Optional[Iterable[BaseException]] = None):
        super().__init__(message)
        self.message = message
        self.errors: list[BaseException] = list(errors or [])

    @property
    def root(self) -> "OAuth2Error":
        """Deepest OAuth2 error along the first branch of the chain."""
        node = self
        while node.errors and isinstance(node.errors[0], OAuth2Error):
            node = node.errors[0]
        return node

    @property
    def description(self) -> str:
        return self.root.message

    def flatten(self) -> list[BaseException]:
        chain: list[BaseException] = [self]
        for err in self.errors:
            chain.extend(err.flatten() if isinstance(err, OAuth2Error) else [err])
        return chain

    def chain_messages(self) -> list[str]:
        return [getattr(e, "message", None) or str(e) or type(e).__name__ for e in self.flatten()]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error!r}, {self.message!r})"


class InvalidRequestError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_request"


class UnsupportedGrantTypeError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "unsupported_grant_type"


class InvalidGrantError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_grant"


class InvalidScopeError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_scope"


class InvalidClaimError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_claim"


class UnauthorizedClientError(OAuth2Error):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "unauthorized_client"


class InvalidClientError(OAuth2Error):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "invalid_client"


class InvalidTokenError(OAuth2Error):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "invalid_token"


class InternalServerError(OAuth2Error):
    pass


def wrap_errors(message: str, errors: BaseException | Iterable[BaseException]) -> OAuth2Error:
    """
    Wraps upstream errors under `message`. The wrapper takes the class (and
    therefore the category/status) of the first OAuth2 error it wraps; anything
    else becomes an InternalServerError.
    """
    if isinstance(errors, BaseException):
        errors = [errors]
    errors = list(errors)
    first = next((e for e in errors if isinstance(e, OAuth2Error)), None)
    cls = type(first) if first is not None else InternalServerError
    return cls(message, errors)


@dataclass(slots=True)
class Result(Generic[T]):
    value: Optional[T] = None
    errors: list[OAuth2Error] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def error(self) -> Optional[OAuth2Error]:
        return self.errors[0] if self.errors else None

    def unwrap(self) -> T:
        if self.errors:
            raise self.errors[0]
        return self.value


def catch_errors(func):
    """Runs an async flow step and returns its outcome as a Result."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Result:
        try:
            return Result(value=await func(*args, **kwargs))
        except OAuth2Error as e:
            return Result(errors=[e])
        except Exception as e:
            logger.error(f"Unexpected failure in {func.__qualname__}", exc_info=True)
            return Result(errors=[InternalServerError(f"Unexpected failure in {func.__qualname__}", [e])])

    return wrapper


def format_oauth2_error(errors: list[OAuth2Error] | OAuth2Error | None, verbose: bool = False) -> dict[str, Any]:
    """
    Converts errors into the `{status, error, error_description}` response body.
    Server errors only expose their detail in verbose mode.
    """
    if isinstance(errors, OAuth2Error):
        errors = [errors]
    err = next((e for e in errors or [] if isinstance(e, OAuth2Error)), None)
    if err is None:
        return {
            "status": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "error": InternalServerError.error,
            "error_description": "Unknown error",
        }

    if err.status_code >= 500:
        logger.error(f"Server error: {' - '.join(err.chain_messages())}")
        description = " - ".join(err.chain_messages()) if verbose else GENERIC_SERVER_ERROR
    else:
        description = err.description

    return {
        "status": err.status_code,
        "error": err.error,
        "error_description": description,
    }


def error_response(errors, verbose: bool = False) -> JSONResponse:
    body = format_oauth2_error(errors, verbose)
    return JSONResponse(status_code=body["status"], content=body)


async def oauth2_exception_handler(request: Request, exc: OAuth2Error):
    from .config import Settings

    logger.warning(f"OAuth2 error for {request.method} {request.url.path}: {exc.error}")
    return error_response(exc, verbose=Settings.VERBOSE_ERRORS)


async def validation_exception_handler(request: Request, exc: RequestValidationError):

    invalid_params = []
    for error in exc.errors():
        invalid_params.append({
            "field": ".".join(map(str, error["loc"])),
            "reason": error["msg"],
            "type": error["type"]
        })

    log_extra = {
        "url": str(request.url),
        "method": request.method,
        "errors": invalid_params
    }
    logger.error(f"Validation failed for {request.method} {request.url}", extra=log_extra)

    fields = ", ".join(p["field"] for p in invalid_params)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "status": status.HTTP_400_BAD_REQUEST,
            "error": InvalidRequestError.error,
            "error_description": f"Invalid request parameters: {fields}.",
            "details": invalid_params,
            "timestamp": time.time()
        },
    )
