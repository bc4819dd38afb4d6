"""Error taxonomy shared by the chat server and client.

Every error carries a stable ``code`` string that is sent to clients in
``error`` frames and in HTTP error bodies, and an HTTP ``status_code`` used by
the REST handlers.

    Forbidden              - non-participant join/send (fatal on join)
    NotFound               - unknown exchange
    InvalidArgument        - empty or oversized message body
    TransientStoreFailure  - persistence unavailable (per message, retryable)
    ConnectionLost         - transport failure (client reconnects)
    Unauthenticated        - missing or invalid access token
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base chat error."""

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str = "", client_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        # Temp id of the send this error answers, if any
        self.client_id = client_id

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class Forbidden(ChatError):
    code = "forbidden"
    status_code = 403


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class InvalidArgument(ChatError):
    code = "invalid_argument"
    status_code = 400


class TransientStoreFailure(ChatError):
    code = "transient_store_failure"
    status_code = 503


class ConnectionLost(ChatError):
    code = "connection_lost"
    status_code = 503


class Unauthenticated(ChatError):
    code = "unauthenticated"
    status_code = 401


_BY_CODE = {
    cls.code: cls
    for cls in (Forbidden, NotFound, InvalidArgument, TransientStoreFailure, ConnectionLost, Unauthenticated)
}


def error_from_code(code: str, message: str = "", client_id: Optional[str] = None) -> ChatError:
    """Rebuild an error received in an ``error`` frame."""
    cls = _BY_CODE.get(code)
    if cls is None:
        err = ChatError(message or code, client_id)
        err.code = code
        return err
    return cls(message, client_id)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError raised from an HTTP route."""
    logger.warning("ChatError on %s: %s (%s)", request.url.path, exc.message, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )
