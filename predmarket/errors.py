"""
Engine error taxonomy.

Every engine rejection is an EngineError (a ValueError, so callers that only
know "bad input" still catch it). The category decides how the API reports
it; the code is the machine-readable reason.

Off-ledger review failures (evidence fetch, evaluation call) are ReviewError.
They are never mapped to an outcome: the queue redelivers the message.
"""


class EngineError(ValueError):
    category = "validation"
    code = "bad_request"

    def __init__(self, message: str, code: str | None = None,
                 details: dict | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(EngineError):
    category = "validation"
    code = "invalid_parameter"


class NotFoundError(EngineError):
    category = "not_found"
    code = "not_found"


class MarketStateError(EngineError):
    category = "market_state"
    code = "market_closed"


class LiquidityError(EngineError):
    category = "liquidity"
    code = "insufficient_liquidity"


class InsufficientBalance(LiquidityError):
    code = "insufficient_balance"


class RiskGuardError(EngineError):
    category = "risk_guard"
    code = "risk_limit"


class AuthorizationError(EngineError):
    category = "authorization"
    code = "unauthorized"


# ---------------------------------------------------------------------------
# Resolution / dispute pipeline
# ---------------------------------------------------------------------------

class ReviewError(Exception):
    """Worker-level failure. Propagates so the queue redelivers."""


class EvidenceFetchError(ReviewError):
    pass


class EvaluationTimedOut(ReviewError):
    pass


class MalformedEvaluation(ReviewError):
    pass


class EvaluationServiceError(ReviewError):
    pass
