"""
Evaluation-service contract. Disputes are re-evaluated by an external
service over a single JSON request/response.

The response is validated with pydantic before anything is persisted.
The call returns one of three results and never raises for timeouts or
bad output:
    Ok(evaluation)       schema-valid response
    TimedOut(detail)     no response within the timeout
    MalformedOutput(...) response that failed JSON parsing or validation
A non-2xx status is a service failure and raises EvaluationServiceError.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError, model_validator

from predmarket.errors import EvaluationServiceError

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 60.0


# --- Response schema ---

class ConditionOutcome(BaseModel):
    condition: str
    met: bool
    evidence: str

class ExclusionOutcome(BaseModel):
    condition: str
    triggered: bool
    evidence: Optional[str] = None

class ResolutionEvaluation(BaseModel):
    must_meet_all_results: list[ConditionOutcome]
    must_not_count_results: list[ExclusionOutcome] = []
    final_result: Literal["YES", "NO"]
    reasoning: str

class DisputeEvaluation(ResolutionEvaluation):
    decision: Literal["upheld", "overturned", "escalate"]
    confidence: float = Field(ge=0.0, le=1.0)
    new_result: Optional[Literal["YES", "NO"]] = None
    new_evidence_relevant: bool = False
    new_evidence_analysis: str = ""
    escalation_reason: Optional[str] = None

    @model_validator(mode="after")
    def _overturn_names_result(self):
        if self.decision == "overturned" and self.new_result is None:
            raise ValueError("overturned decision requires new_result")
        return self


# --- Results ---

@dataclass(frozen=True)
class Ok:
    evaluation: DisputeEvaluation
    request_id: Optional[str] = None


@dataclass(frozen=True)
class TimedOut:
    detail: str


@dataclass(frozen=True)
class MalformedOutput:
    detail: str
    raw: str = ""


EvaluationResult = Union[Ok, TimedOut, MalformedOutput]


def parse_dispute_evaluation(raw: str,
                             request_id: str | None = None) -> EvaluationResult:
    try:
        evaluation = DisputeEvaluation.model_validate_json(raw)
    except ValidationError as e:
        return MalformedOutput(detail=str(e), raw=raw[:2000])
    return Ok(evaluation=evaluation, request_id=request_id)


class EvaluationClient:
    """POSTs an evaluation request to the configured service."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def evaluate_dispute(self, payload: dict) -> EvaluationResult:
        try:
            async with httpx.AsyncClient(transport=self.transport,
                                         timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("evaluation call timed out after %.1fs: %s",
                           self.timeout, e)
            return TimedOut(detail=f"no response within {self.timeout}s")
        except httpx.HTTPError as e:
            raise EvaluationServiceError(f"evaluation request failed: {e}")
        if resp.status_code >= 300:
            raise EvaluationServiceError(
                f"evaluation service returned {resp.status_code}")
        result = parse_dispute_evaluation(resp.text,
                                          resp.headers.get("x-request-id"))
        if isinstance(result, MalformedOutput):
            logger.warning("evaluation output failed validation: %s",
                           result.detail.splitlines()[0])
        return result
