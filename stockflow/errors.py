"""
stockflow — error taxonomy

Every failure a caller can observe is one of these classes. Each carries a
stable machine-readable ``code`` and maps to exactly one HTTP status.

    ValidationError      400  bad caller input, never reaches the broker
    NotFound             404  entity absent
    Conflict             409  duplicate identifier
    InsufficientStock    409  business rule rejection
    UpstreamUnavailable  503  broker or peer service fault
      ├─ TimedOut            RPC reply did not arrive in time
      ├─ NotConnected        broker client not started / already stopped
      └─ PublishError        broker rejected or could not encode a message
    InternalError        500  unexpected
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class StockflowError(Exception):
    """Root of the error hierarchy."""

    default_code = "error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail: dict[str, Any] = detail or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(StockflowError):
    default_code = "validation_error"
    status_code = 400


class NotFound(StockflowError):
    default_code = "not_found"
    status_code = 404


class Conflict(StockflowError):
    default_code = "conflict"
    status_code = 409


class InsufficientStock(StockflowError):
    default_code = "insufficient_stock"
    status_code = 409


class UpstreamUnavailable(StockflowError):
    default_code = "upstream_unavailable"
    status_code = 503


class TimedOut(UpstreamUnavailable):
    default_code = "timed_out"


class NotConnected(UpstreamUnavailable):
    default_code = "not_connected"


class PublishError(UpstreamUnavailable):
    default_code = "publish_error"


class InternalError(StockflowError):
    default_code = "internal_error"
    status_code = 500


# ── FastAPI integration ─────────────────────────


async def _handle_stockflow_error(request: Request, exc: StockflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    messages = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in errors
    ]
    body = ValidationError(
        "; ".join(messages) or "Invalid request",
        detail={"errors": errors},
    ).to_dict()
    return JSONResponse(status_code=400, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error hierarchy (and pydantic request errors) onto HTTP responses."""
    app.add_exception_handler(StockflowError, _handle_stockflow_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
