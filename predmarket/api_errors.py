"""
HTTP error envelope.

Every failure leaves the API as
    {"error": {"code": "...", "message": "...", "details": {...}}}
with the status taken from the engine error's category.
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from predmarket.errors import (
    EngineError, EvaluationServiceError, EvidenceFetchError, ReviewError,
)


CATEGORY_STATUS = {
    "validation": 400,
    "liquidity": 400,
    "risk_guard": 409,
    "market_state": 409,
    "authorization": 403,
    "not_found": 404,
}

# Checked in order; ReviewError is the base of the other two.
REVIEW_ERRORS = (
    (EvidenceFetchError, 502, "evidence_unavailable"),
    (EvaluationServiceError, 502, "evaluation_service_error"),
    (ReviewError, 503, "review_unavailable"),
)


class APIError(Exception):
    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def envelope(self) -> dict:
        return {"error": {"code": self.code, "message": self.message,
                          "details": self.details}}


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content=exc.envelope())


def translate_engine_error(exc: Exception) -> APIError:
    """Map an engine, review or amount-parsing failure onto an APIError."""
    message = str(exc)
    if isinstance(exc, EngineError):
        status = CATEGORY_STATUS.get(exc.category, 400)
        return APIError(status, exc.code, message, exc.details)
    for kind, status, code in REVIEW_ERRORS:
        if isinstance(exc, kind):
            return APIError(status, code, message)
    if "exceeds precision" in message or "invalid amount" in message:
        return APIError(400, "invalid_amount", message)
    return APIError(400, "bad_request", message)
