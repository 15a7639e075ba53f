"""
Dispute reviewer.

Filing validates the request and records a pending dispute; the caller
publishes {"dispute_id": n} to the dispute queue. Processing runs on a
queue consumer:

  1. terminal dispute -> nothing to do (redelivery is harmless)
  2. take the lease: pending -> reviewing, or reclaim an expired lease
  3. fetch new evidence from allow-listed URLs
  4. re-fetch the resolution's original sources
  5. one evaluation call

Only an Ok evaluation mutates anything. TimedOut and MalformedOutput put
the dispute back to pending and raise so the queue redelivers. The lease
is also released when fetching fails. A delivery that finds a live lease
held by another consumer raises RetryLater for when that lease expires.

Leases never outlive the process: `recover_leases` hands every reviewing
dispute back to pending at startup. A dispute whose deliveries are
exhausted is escalated, and escalated or stuck disputes are settled by an
operator through `review_manually`.

Decision rules:
  escalate, or confidence < 0.85     -> escalated
  overturned (new_result must flip)  -> overturned, outcome flipped
  upheld                             -> upheld
"""

import logging
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional

from predmarket.dispute_queue import RetryLater
from predmarket.errors import (
    EvaluationTimedOut, EvidenceFetchError, MalformedEvaluation,
    MarketStateError, ValidationError,
)
from predmarket.evaluation import DisputeEvaluation, MalformedOutput, Ok, TimedOut
from predmarket.evidence import EvidenceFetcher, is_allowed_source, is_https
from predmarket.models import (
    Dispute, DISPUTE_ESCALATED, DISPUTE_OVERTURNED, DISPUTE_PENDING,
    DISPUTE_REVIEWING, DISPUTE_UPHELD, Evidence, Resolution,
)
from predmarket.resolution import (
    RESOLUTION_DISPUTED, RESOLUTION_FINALIZED, RESOLUTION_RESOLVED,
    ResolutionBook,
)

logger = logging.getLogger(__name__)


CONFIDENCE_THRESHOLD = 0.85
LEASE_SECONDS = 300
MAX_EVIDENCE_URLS = 10
MIN_RETRY_SECONDS = 1.0
MANUAL_DECISIONS = ("uphold", "overturn")

OverturnCallback = Callable[[str, str], object]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _opposite(result: str) -> str:
    return "NO" if result == "YES" else "YES"


def _evidence_payload(evidence: list[Evidence]) -> list[dict]:
    return [{"source": ev.source_name, "url": ev.source_url,
             "content": ev.content, "content_hash": ev.content_hash}
            for ev in evidence if ev.success]


class DisputeReviewer:

    def __init__(self, book: ResolutionBook, fetcher: EvidenceFetcher,
                 evaluator, on_overturn: Optional[OverturnCallback] = None,
                 lease_seconds: int = LEASE_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.book = book
        self.fetcher = fetcher
        self.evaluator = evaluator
        self.on_overturn = on_overturn
        self.lease_seconds = lease_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Filing
    # ------------------------------------------------------------------

    def file_dispute(self, resolution_id: int, user: str, reason: str,
                     evidence_urls: list[str],
                     now: int | None = None) -> Dispute:
        now = int(self.clock()) if now is None else now
        resolution = self.book.get_resolution(resolution_id)
        if resolution.status == RESOLUTION_FINALIZED:
            raise MarketStateError("resolution is finalized",
                                   code="resolution_finalized")
        if now > resolution.dispute_window_ends:
            raise MarketStateError("dispute window has closed",
                                   code="dispute_window_closed")
        if not reason.strip():
            raise ValidationError("dispute reason must not be empty")
        if len(evidence_urls) > MAX_EVIDENCE_URLS:
            raise ValidationError(
                f"at most {MAX_EVIDENCE_URLS} evidence urls per dispute")
        for url in evidence_urls:
            if not is_https(url):
                raise ValidationError(f"evidence url must be https: {url}",
                                      code="invalid_evidence_url")
        if self.book.has_escalation(resolution_id):
            raise MarketStateError(
                "resolution is under manual review after escalation",
                code="dispute_escalated")
        if self.book.active_disputes(resolution_id):
            raise MarketStateError(
                "resolution already has a dispute under review",
                code="dispute_active")

        dispute = self.book.add_dispute(resolution_id, user, reason,
                                        evidence_urls)
        resolution.status = RESOLUTION_DISPUTED
        self.book.audit("dispute_filed", "dispute", str(dispute.id), user, {
            "resolution_id": resolution_id,
            "reason": reason,
            "evidence_urls": list(evidence_urls),
        })
        logger.info("dispute %d filed against resolution %d by %s",
                    dispute.id, resolution_id, user)
        return dispute

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    def _acquire(self, dispute: Dispute, consumer: str) -> bool:
        now = self.clock()
        expired = (dispute.status == DISPUTE_REVIEWING
                   and (dispute.lease_expires_at or 0) <= now)
        if dispute.status != DISPUTE_PENDING and not expired:
            return False
        if expired:
            logger.warning("dispute %d: reclaiming expired lease from %s",
                           dispute.id, dispute.lease_owner)
        dispute.status = DISPUTE_REVIEWING
        dispute.lease_owner = consumer
        dispute.lease_expires_at = now + self.lease_seconds
        dispute.deliveries += 1
        return True

    def _release(self, dispute: Dispute, consumer: str) -> None:
        if dispute.status == DISPUTE_REVIEWING and dispute.lease_owner == consumer:
            dispute.status = DISPUTE_PENDING
            dispute.lease_owner = None
            dispute.lease_expires_at = None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, envelope: dict,
                      consumer: str = "reviewer") -> Dispute:
        """Handle one queue delivery. Safe to call any number of times."""
        dispute_id = envelope.get("dispute_id")
        if not isinstance(dispute_id, int):
            raise ValidationError(f"bad dispute envelope: {envelope}")
        dispute = self.book.get_dispute(dispute_id)
        if dispute.terminal:
            logger.info("dispute %d already %s, skipping", dispute.id,
                        dispute.status)
            return dispute
        if not self._acquire(dispute, consumer):
            wait = max(MIN_RETRY_SECONDS,
                       (dispute.lease_expires_at or 0) - self.clock())
            raise RetryLater(wait, f"dispute {dispute.id} is leased by "
                                   f"{dispute.lease_owner}")

        resolution = self.book.get_resolution(dispute.resolution_id)
        try:
            result = await self._evaluate(dispute, resolution)
            if isinstance(result, TimedOut):
                raise EvaluationTimedOut(
                    f"dispute {dispute.id}: {result.detail}")
            if isinstance(result, MalformedOutput):
                raise MalformedEvaluation(
                    f"dispute {dispute.id}: {result.detail}")
            return self._apply(dispute, resolution, result, consumer)
        except Exception:
            self._release(dispute, consumer)
            logger.error("dispute %d review failed, released for "
                         "redelivery", dispute.id, exc_info=True)
            raise

    async def _evaluate(self, dispute: Dispute, resolution: Resolution):
        allowed = resolution.criteria.allowed_sources
        urls = [u for u in dispute.evidence_urls
                if is_allowed_source(u, allowed)]
        for url in dispute.evidence_urls:
            if url not in urls:
                logger.warning("dispute %d: ignoring evidence outside the "
                               "allow-list: %s", dispute.id, url)
        new_evidence = await self.fetcher.fetch_urls(urls)
        original = await self.fetcher.fetch_sources(allowed)
        if not any(ev.success for ev in original):
            raise EvidenceFetchError(
                f"dispute {dispute.id}: no original source could be "
                f"re-fetched")

        payload = {
            "question": resolution.question,
            "criteria": asdict(resolution.criteria),
            "original_resolution": {
                "final_result": resolution.final_result,
                "reasoning": resolution.reasoning,
                "must_meet_all_results":
                    [asdict(r) for r in resolution.must_meet_all_results],
                "must_not_count_results":
                    [asdict(r) for r in resolution.must_not_count_results],
                "evidence_hash": resolution.evidence_hash,
            },
            "dispute": {
                "id": dispute.id,
                "reason": dispute.reason,
                "evidence_urls": dispute.evidence_urls,
            },
            "original_evidence": _evidence_payload(original),
            "new_evidence": _evidence_payload(new_evidence),
        }
        return await self.evaluator.evaluate_dispute(payload)

    def _apply(self, dispute: Dispute, resolution: Resolution, result: Ok,
               consumer: str) -> Dispute:
        if dispute.status != DISPUTE_REVIEWING or dispute.lease_owner != consumer:
            logger.warning("dispute %d: lease lost before apply, dropping "
                           "result", dispute.id)
            return dispute
        ev: DisputeEvaluation = result.evaluation
        previous = resolution.final_result

        if ev.decision == "escalate" or ev.confidence < CONFIDENCE_THRESHOLD:
            status = DISPUTE_ESCALATED
        elif ev.decision == "overturned":
            if ev.new_result != _opposite(previous):
                raise MalformedEvaluation(
                    f"dispute {dispute.id}: overturn must flip {previous}, "
                    f"got {ev.new_result}")
            status = DISPUTE_OVERTURNED
        else:
            status = DISPUTE_UPHELD

        if status == DISPUTE_OVERTURNED:
            if self.on_overturn is not None:
                self.on_overturn(resolution.market, ev.new_result.lower())
            resolution.final_result = ev.new_result
            dispute.new_result = ev.new_result

        dispute.status = status
        dispute.ai_review = ev.model_dump()
        dispute.ai_review["request_id"] = result.request_id
        dispute.resolved_at = _now()
        dispute.lease_owner = None
        dispute.lease_expires_at = None
        if status != DISPUTE_ESCALATED:
            resolution.status = RESOLUTION_RESOLVED

        self.book.audit(f"dispute_{status}", "dispute", str(dispute.id),
                        "dispute_reviewer", {
                            "resolution_id": resolution.id,
                            "decision": ev.decision,
                            "confidence": ev.confidence,
                            "previous_result": previous,
                            "new_result": resolution.final_result,
                        })
        logger.info("dispute %d %s (decision=%s confidence=%.2f)",
                    dispute.id, status, ev.decision, ev.confidence)
        return dispute

    # ------------------------------------------------------------------
    # Recovery and operator actions
    # ------------------------------------------------------------------

    def recover_leases(self) -> list[Dispute]:
        """
        Startup: no consumer of a previous process is still running, so
        every `reviewing` lease is stale. Returns the disputes that need a
        delivery.
        """
        for dispute in self.book.disputes.values():
            if dispute.status == DISPUTE_REVIEWING:
                logger.warning("dispute %d: dropping stale lease held by %s",
                               dispute.id, dispute.lease_owner)
                self._release(dispute, dispute.lease_owner)
        return [d for d in self.book.disputes.values()
                if d.status == DISPUTE_PENDING]

    def escalate_undeliverable(self, dispute_id: int, error: str) -> Dispute:
        """Queue gave up on this dispute: hand it to manual review."""
        dispute = self.book.get_dispute(dispute_id)
        if dispute.terminal:
            return dispute
        dispute.status = DISPUTE_ESCALATED
        dispute.lease_owner = None
        dispute.lease_expires_at = None
        dispute.resolved_at = _now()
        self.book.audit("dispute_escalated", "dispute", str(dispute.id),
                        "dispute_queue", {
                            "resolution_id": dispute.resolution_id,
                            "reason": "delivery attempts exhausted",
                            "error": error,
                            "deliveries": dispute.deliveries,
                        })
        logger.error("dispute %d escalated after failed deliveries: %s",
                     dispute.id, error)
        return dispute

    def review_manually(self, dispute_id: int, decision: str, reviewer: str,
                        reason: str, new_result: str | None = None) -> Dispute:
        """
        Operator decision on a pending, reviewing or escalated dispute.

        `uphold` keeps the resolution. `overturn` needs `new_result`, which
        must flip the current result; the engine outcome is overridden
        before anything here changes. A consumer still holding the lease
        finds it gone and drops its result.
        """
        if decision not in MANUAL_DECISIONS:
            raise ValidationError(f"decision must be one of {MANUAL_DECISIONS}",
                                  code="invalid_decision")
        if not reason.strip():
            raise ValidationError("review reason must not be empty")
        dispute = self.book.get_dispute(dispute_id)
        if dispute.status not in (DISPUTE_PENDING, DISPUTE_REVIEWING,
                                  DISPUTE_ESCALATED):
            raise MarketStateError(
                f"dispute {dispute.id} is {dispute.status} and cannot be "
                f"reviewed", code="dispute_closed")
        resolution = self.book.get_resolution(dispute.resolution_id)
        if resolution.status == RESOLUTION_FINALIZED:
            raise MarketStateError("resolution is finalized",
                                   code="resolution_finalized")
        previous = resolution.final_result

        if decision == "overturn":
            if new_result not in ("YES", "NO"):
                raise ValidationError("overturn requires new_result YES or NO",
                                      code="new_result_required")
            if new_result == previous:
                raise ValidationError(
                    f"overturn must flip the result {previous}",
                    code="overturn_must_flip")
            if self.on_overturn is not None:
                self.on_overturn(resolution.market, new_result.lower())
            resolution.final_result = new_result
            dispute.new_result = new_result
            dispute.status = DISPUTE_OVERTURNED
        else:
            dispute.status = DISPUTE_UPHELD

        dispute.admin_review = {"decision": decision, "reason": reason,
                                "new_result": dispute.new_result,
                                "reviewed_by": reviewer}
        dispute.lease_owner = None
        dispute.lease_expires_at = None
        dispute.resolved_at = _now()
        if not self.book.active_disputes(resolution.id) \
                and not self.book.has_escalation(resolution.id):
            resolution.status = RESOLUTION_RESOLVED

        self.book.audit("dispute_resolved", "dispute", str(dispute.id),
                        reviewer, {
                            "resolution_id": resolution.id,
                            "decision": decision,
                            "reason": reason,
                            "previous_result": previous,
                            "new_result": resolution.final_result,
                        })
        logger.info("dispute %d %s manually by %s", dispute.id,
                    dispute.status, reviewer)
        return dispute
