"""
Transit Routes.

FastAPI routes for the Vault transit engine encrypt/decrypt API,
translating each call into a Cipher operation.

Author: sops-sakura-kms Team
Date: 2026-10-19
"""

import base64
from typing import Type, TypeVar

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.logging_config import get_logger
from ..exceptions import InvalidRequestError, ShimError
from .cipher import Cipher
from .models import (
    VAULT_PREFIX,
    DecryptRequest,
    DecryptResponse,
    EncryptRequest,
    EncryptResponse,
    ErrorResponse,
)

logger = get_logger(__name__)

ENCRYPT_PATH = "/v1/transit/encrypt/{key_id}"
DECRYPT_PATH = "/v1/transit/decrypt/{key_id}"
HEALTH_PATH = "/health"

# Vault itself treats POST and PUT identically for writes
WRITE_METHODS = ["PUT", "POST"]

RequestModel = TypeVar("RequestModel", bound=BaseModel)


async def read_request(request: Request, model: Type[RequestModel]) -> RequestModel:
    """
    Validate the Content-Type header and decode the JSON body.

    An absent Content-Type is accepted; otherwise it must start with
    ``application/json`` and is checked before the body is read.

    Raises:
        InvalidRequestError: On a bad content-type or malformed body
    """
    content_type = request.headers.get("content-type", "")
    if content_type and not content_type.startswith("application/json"):
        raise InvalidRequestError(f"invalid content-type: {content_type}")

    body = await request.body()
    try:
        return model.model_validate_json(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        detail = f"{location}: {first['msg']}" if location else first["msg"]
        raise InvalidRequestError(f"invalid request body: {detail}") from e


def error_response(status_code: int, message: str) -> JSONResponse:
    """
    Build a Vault style error response.

    Every error answered to a client is also logged.
    """
    logger.error(f"error response: status={status_code} error={message}")
    body = ErrorResponse(errors=[message])
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_router(cipher: Cipher) -> APIRouter:
    """Create FastAPI router for the transit endpoints.

    Args:
        cipher: Cipher used for every encrypt/decrypt request

    Returns:
        Configured APIRouter
    """
    router = APIRouter()

    @router.get(HEALTH_PATH, status_code=status.HTTP_200_OK, include_in_schema=False)
    async def health_check() -> Response:
        """Readiness probe; always 200 with an empty body."""
        return Response(status_code=status.HTTP_200_OK)

    @router.api_route(
        ENCRYPT_PATH,
        methods=WRITE_METHODS,
        response_model=EncryptResponse,
        tags=["Transit"],
    )
    async def encrypt(key_id: str, request: Request) -> EncryptResponse:
        """Encrypt base64 plaintext with the KMS key ``key_id``.

        Returns:
            Ciphertext prefixed with ``vault:v1:``

        Raises:
            InvalidRequestError: On bad content-type, JSON or base64
            CipherError: When the KMS call fails
        """
        logger.info(f"Encrypting data with Sakura KMS key_id={key_id}")
        req = await read_request(request, EncryptRequest)
        try:
            plaintext = base64.b64decode(req.plaintext, validate=True)
        except ValueError as e:
            raise InvalidRequestError(f"invalid base64 plaintext: {e}") from e

        ciphertext = await cipher.encrypt(key_id, plaintext)
        return EncryptResponse(ciphertext=VAULT_PREFIX + ciphertext)

    @router.api_route(
        DECRYPT_PATH,
        methods=WRITE_METHODS,
        response_model=DecryptResponse,
        tags=["Transit"],
    )
    async def decrypt(key_id: str, request: Request) -> DecryptResponse:
        """Decrypt ``vault:v1:`` ciphertext with the KMS key ``key_id``.

        Returns:
            Base64-encoded plaintext

        Raises:
            InvalidRequestError: On bad content-type, JSON or missing prefix
            CipherError: When the KMS call fails
        """
        logger.info(f"Decrypting data with Sakura KMS key_id={key_id}")
        req = await read_request(request, DecryptRequest)
        if not req.ciphertext.startswith(VAULT_PREFIX):
            raise InvalidRequestError("invalid ciphertext format")

        plaintext = await cipher.decrypt(key_id, req.ciphertext[len(VAULT_PREFIX):])
        return DecryptResponse(plaintext=base64.b64encode(plaintext).decode("ascii"))

    return router


async def shim_exception_handler(request: Request, exc: ShimError) -> JSONResponse:
    """Answer request validation and backend errors."""
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Answer routing errors (404, 405) in the Vault error shape."""
    response = error_response(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer unexpected errors with 500 in the Vault error shape."""
    logger.exception(f"unexpected error handling {request.method} {request.url.path}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, f"internal error: {exc}")


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with a FastAPI app.

    Args:
        app: FastAPI app instance
    """
    app.add_exception_handler(ShimError, shim_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


def create_app(cipher: Cipher) -> FastAPI:
    """
    Create the transit server application.

    Returns:
        FastAPI application with the transit routes and error handlers.
    """
    app = FastAPI(
        title="sops-sakura-kms",
        description="Vault transit engine compatible API backed by Sakura Cloud KMS",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(create_router(cipher))
    register_exception_handlers(app)
    return app
