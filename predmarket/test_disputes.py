"""
Dispute reviewer tests: filing rules, the evaluation decision table, the
processing lease, redelivery, the dispute queue, lease recovery after a
restart and manual review.

The evidence sources and the evaluation service are httpx.MockTransport
handlers, so nothing leaves the process.
"""

import asyncio
import json

import httpx
import pytest

from predmarket.dispute_queue import DisputeQueue, RetryLater, start_consumers
from predmarket.disputes import CONFIDENCE_THRESHOLD, DisputeReviewer
from predmarket.errors import (
    EvaluationServiceError, EvaluationTimedOut, EvidenceFetchError,
    MalformedEvaluation, MarketStateError, ValidationError,
)
from predmarket.evaluation import (
    EvaluationClient, MalformedOutput, Ok, parse_dispute_evaluation,
)
from predmarket.evidence import EvidenceFetcher
from predmarket.market_engine import MarketEngine
from predmarket.models import (
    Condition, ConditionResult, ConfigParams, CreateMarketParams,
    EvidenceSource, Resolution, ResolutionCriteria,
)
from predmarket.resolution import ResolutionBook


NOW = 1_700_000_000
DAY = 24 * 3600
EVAL_URL = "https://eval.example/v1/dispute"

PAGES = {
    "https://wire.example/result": "Team A won the final.",
    "https://league.example/": "Official: Team A won.",
    "https://wire.example/correction": "Correction: Team B won after review.",
}


def evaluation_body(decision="overturned", confidence=0.9, new_result="NO",
                    **extra) -> dict:
    body = {
        "must_meet_all_results": [{"condition": "Team A won", "met": False,
                                   "evidence": "wire: correction"}],
        "must_not_count_results": [],
        "final_result": new_result or "YES",
        "reasoning": "the correction supersedes the first report",
        "decision": decision,
        "confidence": confidence,
        "new_result": new_result,
        "new_evidence_relevant": True,
        "new_evidence_analysis": "official correction",
    }
    body.update(extra)
    return body


class FakeEvaluator:
    """Evaluation service behind a MockTransport. Records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        response = self.responses.pop(0) if len(self.responses) > 1 \
            else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response,
                              headers={"x-request-id": "req-1"})

    def client(self) -> EvaluationClient:
        return EvaluationClient(EVAL_URL, timeout=5,
                                transport=httpx.MockTransport(self.handler))


def evidence_transport(pages=None) -> httpx.MockTransport:
    pages = PAGES if pages is None else pages

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in pages:
            return httpx.Response(200, text=pages[url])
        return httpx.Response(404, text="not found")
    return httpx.MockTransport(handler)


def make_resolution(book: ResolutionBook, market="mkt",
                    final_result="YES") -> Resolution:
    criteria = ResolutionCriteria(
        must_meet_all=[Condition(text="Team A won")],
        allowed_sources=[
            EvidenceSource(name="wire", url="https://wire.example/result"),
            EvidenceSource(name="league", url="https://league.example/"),
        ],
    )
    return book.record_resolution(Resolution(
        id=0, market=market, question="Did Team A win?", criteria=criteria,
        evidence_hash="abc", evidence_sources=[],
        must_meet_all_results=[ConditionResult(
            condition="Team A won", met=True, evidence="wire: ...")],
        must_not_count_results=[], final_result=final_result,
        reasoning="1/1 required conditions met", dispute_window_ends=NOW + DAY,
    ))


def make_reviewer(evaluator: FakeEvaluator, book=None, pages=None,
                  on_overturn=None, clock=lambda: NOW) -> DisputeReviewer:
    book = book or ResolutionBook()
    fetcher = EvidenceFetcher(transport=evidence_transport(pages))
    return DisputeReviewer(book, fetcher, evaluator.client(),
                           on_overturn=on_overturn, clock=clock)


def audit_actions(book: ResolutionBook) -> list[str]:
    return [a.action for a in book.audit_log]


# ---------------------------------------------------------------------------
# Filing
# ---------------------------------------------------------------------------

class TestFiling:
    def setup_method(self):
        self.reviewer = make_reviewer(FakeEvaluator(evaluation_body()))
        self.book = self.reviewer.book
        self.res = make_resolution(self.book)

    def test_file_marks_resolution_disputed(self):
        d = self.reviewer.file_dispute(self.res.id, "bob", "wrong team",
                                       ["https://wire.example/correction"],
                                       now=NOW)
        assert d.status == "pending"
        assert self.res.status == "disputed"
        assert audit_actions(self.book)[-1] == "dispute_filed"

    def test_window_closed(self):
        with pytest.raises(MarketStateError) as exc:
            self.reviewer.file_dispute(self.res.id, "bob", "late", [],
                                       now=NOW + DAY + 1)
        assert exc.value.code == "dispute_window_closed"

    def test_evidence_must_be_https(self):
        with pytest.raises(ValidationError) as exc:
            self.reviewer.file_dispute(self.res.id, "bob", "see link",
                                       ["http://wire.example/x"], now=NOW)
        assert exc.value.code == "invalid_evidence_url"

    def test_reason_required(self):
        with pytest.raises(ValidationError):
            self.reviewer.file_dispute(self.res.id, "bob", "  ", [], now=NOW)

    def test_one_active_dispute_per_resolution(self):
        self.reviewer.file_dispute(self.res.id, "bob", "wrong", [], now=NOW)
        with pytest.raises(MarketStateError) as exc:
            self.reviewer.file_dispute(self.res.id, "carol", "also wrong", [],
                                       now=NOW)
        assert exc.value.code == "dispute_active"

    def test_finalized_resolution(self):
        self.res.status = "finalized"
        with pytest.raises(MarketStateError) as exc:
            self.reviewer.file_dispute(self.res.id, "bob", "wrong", [],
                                       now=NOW)
        assert exc.value.code == "resolution_finalized"


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class TestDecisions:
    async def test_c_overturn_flips_result_exactly_once(self):
        engine = MarketEngine()
        engine.configure("admin", ConfigParams(admin="admin",
                                               team_wallet="team"))
        market = engine.create_market(CreateMarketParams(
            creator="alice", question="Did Team A win?", slug="final",
            b=100_000_000), now=NOW)
        engine.resolve_market("admin", market.address, "yes", now=NOW)

        evaluator = FakeEvaluator(evaluation_body(confidence=0.90))
        reviewer = make_reviewer(evaluator,
                                 on_overturn=engine.override_outcome)
        res = make_resolution(reviewer.book, market=market.address)
        d = reviewer.file_dispute(res.id, "bob", "wrong team",
                                  ["https://wire.example/correction"],
                                  now=NOW)

        await reviewer.process({"dispute_id": d.id})
        assert d.status == "overturned"
        assert d.new_result == "NO"
        assert res.final_result == "NO"
        assert res.status == "resolved"
        assert engine.get_market(market.address).outcome == "no"
        assert d.ai_review["request_id"] == "req-1"

        # redelivery of the same message changes nothing
        await reviewer.process({"dispute_id": d.id})
        assert audit_actions(reviewer.book).count("dispute_overturned") == 1
        assert len(evaluator.requests) == 1
        assert engine.get_market(market.address).outcome == "no"

    @pytest.mark.parametrize("confidence", [0.0, 0.5, 0.84, 0.8499])
    async def test_low_confidence_escalates(self, confidence):
        overturned = []
        reviewer = make_reviewer(
            FakeEvaluator(evaluation_body(confidence=confidence)),
            on_overturn=lambda m, o: overturned.append((m, o)))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)

        await reviewer.process({"dispute_id": d.id})
        assert d.status == "escalated"
        assert res.final_result == "YES"
        assert res.status == "disputed"
        assert overturned == []
        assert "dispute_escalated" in audit_actions(reviewer.book)

    async def test_escalated_resolution_takes_no_new_disputes(self):
        reviewer = make_reviewer(FakeEvaluator(
            evaluation_body(decision="escalate", confidence=0.99,
                            new_result=None,
                            escalation_reason="conflicting sources")))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        await reviewer.process({"dispute_id": d.id})
        assert d.status == "escalated"
        with pytest.raises(MarketStateError) as exc:
            reviewer.file_dispute(res.id, "carol", "still wrong", [], now=NOW)
        assert exc.value.code == "dispute_escalated"

    async def test_threshold_confidence_is_enough(self):
        reviewer = make_reviewer(FakeEvaluator(
            evaluation_body(confidence=CONFIDENCE_THRESHOLD)))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        await reviewer.process({"dispute_id": d.id})
        assert d.status == "overturned"

    async def test_upheld(self):
        reviewer = make_reviewer(FakeEvaluator(
            evaluation_body(decision="upheld", confidence=0.95,
                            new_result=None)))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        await reviewer.process({"dispute_id": d.id})
        assert d.status == "upheld"
        assert res.final_result == "YES"
        assert res.status == "resolved"
        assert audit_actions(reviewer.book)[-1] == "dispute_upheld"

    async def test_overturn_must_flip(self):
        reviewer = make_reviewer(FakeEvaluator(
            evaluation_body(new_result="YES", confidence=0.95)))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        with pytest.raises(MalformedEvaluation):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"
        assert res.final_result == "YES"
        assert "dispute_overturned" not in audit_actions(reviewer.book)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

class TestFailures:
    async def _file(self, evaluator, pages=None):
        reviewer = make_reviewer(evaluator, pages=pages)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        return reviewer, res, d

    async def test_timeout_releases_for_redelivery(self):
        reviewer, res, d = await self._file(
            FakeEvaluator(httpx.ReadTimeout("slow")))
        with pytest.raises(EvaluationTimedOut):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"
        assert d.lease_owner is None
        assert res.final_result == "YES"
        assert audit_actions(reviewer.book) == ["resolution_recorded",
                                                "dispute_filed"]

    async def test_malformed_output_is_never_applied(self):
        reviewer, res, d = await self._file(FakeEvaluator(
            httpx.Response(200, text='{"decision": "overturned", "confid')))
        with pytest.raises(MalformedEvaluation):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"
        assert d.ai_review is None

    async def test_schema_violation_is_malformed(self):
        reviewer, _, d = await self._file(FakeEvaluator(
            evaluation_body(confidence=1.7)))
        with pytest.raises(MalformedEvaluation):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"

    async def test_service_error(self):
        reviewer, _, d = await self._file(FakeEvaluator(
            httpx.Response(502, text="bad gateway")))
        with pytest.raises(EvaluationServiceError):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"

    async def test_original_sources_unreachable(self):
        evaluator = FakeEvaluator(evaluation_body())
        reviewer, _, d = await self._file(evaluator, pages={})
        with pytest.raises(EvidenceFetchError):
            await reviewer.process({"dispute_id": d.id})
        assert d.status == "pending"
        assert evaluator.requests == []

    async def test_bad_envelope(self):
        reviewer, _, _ = await self._file(FakeEvaluator(evaluation_body()))
        with pytest.raises(ValidationError):
            await reviewer.process({"dispute_id": "1"})


class TestEvaluationParsing:
    def test_overturn_without_result_is_malformed(self):
        raw = json.dumps(evaluation_body(new_result=None))
        assert isinstance(parse_dispute_evaluation(raw), MalformedOutput)

    def test_valid(self):
        result = parse_dispute_evaluation(json.dumps(evaluation_body()), "r")
        assert isinstance(result, Ok)
        assert result.evaluation.new_result == "NO"
        assert result.request_id == "r"


# ---------------------------------------------------------------------------
# Lease + evidence
# ---------------------------------------------------------------------------

class TestLease:
    async def test_live_lease_is_respected(self):
        evaluator = FakeEvaluator(evaluation_body())
        reviewer = make_reviewer(evaluator)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        d.status = "reviewing"
        d.lease_owner = "other-worker"
        d.lease_expires_at = NOW + 100

        with pytest.raises(RetryLater) as exc:
            await reviewer.process({"dispute_id": d.id}, "me")
        assert exc.value.delay == 100
        assert evaluator.requests == []
        assert d.lease_owner == "other-worker"

    async def test_expired_lease_is_reclaimed(self):
        evaluator = FakeEvaluator(evaluation_body())
        reviewer = make_reviewer(evaluator)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        d.status = "reviewing"
        d.lease_owner = "crashed-worker"
        d.lease_expires_at = NOW - 1

        await reviewer.process({"dispute_id": d.id}, "me")
        assert d.status == "overturned"
        assert d.lease_owner is None

    async def test_evidence_outside_allow_list_not_fetched(self):
        evaluator = FakeEvaluator(evaluation_body())
        reviewer = make_reviewer(evaluator)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [
            "https://wire.example/correction",
            "https://evil.example/fake",
        ], now=NOW)

        await reviewer.process({"dispute_id": d.id})
        payload = evaluator.requests[0]
        assert [e["url"] for e in payload["new_evidence"]] == \
            ["https://wire.example/correction"]
        assert len(payload["original_evidence"]) == 2
        assert payload["original_resolution"]["final_result"] == "YES"
        assert payload["dispute"]["reason"] == "wrong"


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class TestQueue:
    async def test_redelivers_until_success(self):
        queue = DisputeQueue(max_deliveries=3)
        attempts = []

        async def handler(envelope, consumer):
            attempts.append(consumer)
            if len(attempts) < 3:
                raise RuntimeError("transient")

        tasks = start_consumers(queue, handler, 2)
        await queue.publish({"dispute_id": 1})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        assert len(attempts) == 3
        assert queue.dead_letters == []

    async def test_dead_letter_after_max_deliveries(self):
        queue = DisputeQueue(max_deliveries=2)
        calls = []

        async def handler(envelope, consumer):
            calls.append(envelope)
            raise RuntimeError("always fails")

        tasks = start_consumers(queue, handler, 1)
        await queue.publish({"dispute_id": 9})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        assert len(calls) == 2
        assert queue.dead_letters == [{"dispute_id": 9}]

    async def test_timeout_then_success_through_queue(self):
        evaluator = FakeEvaluator(httpx.ReadTimeout("slow"),
                                  evaluation_body())
        reviewer = make_reviewer(evaluator)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)

        queue = DisputeQueue(max_deliveries=3)
        tasks = start_consumers(queue, reviewer.process, 1)
        await queue.publish({"dispute_id": d.id})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        assert d.status == "overturned"
        assert d.deliveries == 2
        assert audit_actions(reviewer.book).count("dispute_overturned") == 1
        assert queue.dead_letters == []

    async def test_deferral_does_not_use_up_deliveries(self):
        queue = DisputeQueue(max_deliveries=1)
        calls = []

        async def handler(envelope, consumer):
            calls.append(consumer)
            if len(calls) < 4:
                raise RetryLater(0)

        tasks = start_consumers(queue, handler, 1)
        await queue.publish({"dispute_id": 3})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        assert len(calls) == 4
        assert queue.dead_letters == []


class Clock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Stuck disputes
# ---------------------------------------------------------------------------

class TestStuckDisputes:
    async def test_leased_dispute_is_retried_after_lease_expires(self):
        clock = Clock(NOW)
        evaluator = FakeEvaluator(evaluation_body())
        reviewer = make_reviewer(evaluator, clock=clock)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        # left behind by a consumer that died mid-review
        d.status = "reviewing"
        d.lease_owner = "consumer-0"
        d.lease_expires_at = NOW + 300

        slept = []

        async def sleep(delay):
            slept.append(delay)
            clock.now += delay
            await asyncio.sleep(0)

        queue = DisputeQueue(max_deliveries=3, sleep=sleep)
        tasks = start_consumers(queue, reviewer.process, 2)
        await queue.publish({"dispute_id": d.id})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await queue.close()

        assert slept == [300]
        assert d.status == "overturned"
        assert d.lease_owner is None
        assert len(evaluator.requests) == 1

    def test_recover_leases_after_restart(self):
        reviewer = make_reviewer(FakeEvaluator(evaluation_body()))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        d.status = "reviewing"
        d.lease_owner = "consumer-1"
        d.lease_expires_at = NOW + 300

        assert reviewer.recover_leases() == [d]
        assert d.status == "pending"
        assert d.lease_owner is None
        assert d.lease_expires_at is None

    def test_recover_leases_skips_settled(self):
        reviewer = make_reviewer(FakeEvaluator(evaluation_body()))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        d.status = "upheld"
        assert reviewer.recover_leases() == []
        assert d.status == "upheld"

    async def test_dead_letter_escalates(self):
        evaluator = FakeEvaluator(httpx.Response(502, text="bad gateway"))
        reviewer = make_reviewer(evaluator)
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)

        async def on_dead_letter(envelope, error):
            reviewer.escalate_undeliverable(envelope["dispute_id"], str(error))

        queue = DisputeQueue(max_deliveries=2, on_dead_letter=on_dead_letter)
        tasks = start_consumers(queue, reviewer.process, 1)
        await queue.publish({"dispute_id": d.id})
        await asyncio.wait_for(queue.join(), timeout=5)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        assert queue.dead_letters == [{"dispute_id": d.id}]
        assert d.status == "escalated"
        assert d.lease_owner is None
        assert reviewer.book.active_disputes(res.id) == []
        record = reviewer.book.audit_log[-1]
        assert record.action == "dispute_escalated"
        assert record.actor == "dispute_queue"
        assert record.details["deliveries"] == 2

    def test_escalate_undeliverable_keeps_settled_disputes(self):
        reviewer = make_reviewer(FakeEvaluator(evaluation_body()))
        res = make_resolution(reviewer.book)
        d = reviewer.file_dispute(res.id, "bob", "wrong", [], now=NOW)
        d.status = "overturned"
        reviewer.escalate_undeliverable(d.id, "late failure")
        assert d.status == "overturned"
        assert "dispute_escalated" not in audit_actions(reviewer.book)


# ---------------------------------------------------------------------------
# Manual review
# ---------------------------------------------------------------------------

class TestManualReview:
    def setup_method(self):
        self.overturned = []
        self.reviewer = make_reviewer(
            FakeEvaluator(evaluation_body()),
            on_overturn=lambda m, o: self.overturned.append((m, o)))
        self.book = self.reviewer.book
        self.res = make_resolution(self.book)
        self.dispute = self.reviewer.file_dispute(self.res.id, "bob", "wrong",
                                                  [], now=NOW)

    def test_uphold(self):
        d = self.reviewer.review_manually(self.dispute.id, "uphold", "admin",
                                          "sources agree")
        assert d.status == "upheld"
        assert d.admin_review["reviewed_by"] == "admin"
        assert self.res.final_result == "YES"
        assert self.res.status == "resolved"
        assert self.overturned == []
        assert audit_actions(self.book)[-1] == "dispute_resolved"

    def test_overturn_flips_outcome(self):
        d = self.reviewer.review_manually(self.dispute.id, "overturn",
                                          "admin", "correction issued", "NO")
        assert d.status == "overturned"
        assert d.new_result == "NO"
        assert self.res.final_result == "NO"
        assert self.overturned == [("mkt", "no")]
        details = self.book.audit_log[-1].details
        assert details["previous_result"] == "YES"
        assert details["new_result"] == "NO"

    def test_overturn_needs_result(self):
        with pytest.raises(ValidationError) as exc:
            self.reviewer.review_manually(self.dispute.id, "overturn",
                                          "admin", "correction")
        assert exc.value.code == "new_result_required"
        assert self.dispute.status == "pending"

    def test_overturn_must_flip(self):
        with pytest.raises(ValidationError) as exc:
            self.reviewer.review_manually(self.dispute.id, "overturn",
                                          "admin", "correction", "YES")
        assert exc.value.code == "overturn_must_flip"
        assert self.overturned == []

    def test_unknown_decision(self):
        with pytest.raises(ValidationError) as exc:
            self.reviewer.review_manually(self.dispute.id, "maybe", "admin",
                                          "unsure")
        assert exc.value.code == "invalid_decision"

    def test_settled_dispute_is_closed(self):
        self.reviewer.review_manually(self.dispute.id, "uphold", "admin",
                                      "fine")
        with pytest.raises(MarketStateError) as exc:
            self.reviewer.review_manually(self.dispute.id, "uphold", "admin",
                                          "again")
        assert exc.value.code == "dispute_closed"

    def test_escalated_dispute_is_settled(self):
        self.reviewer.escalate_undeliverable(self.dispute.id, "timeouts")
        assert self.book.has_escalation(self.res.id)
        d = self.reviewer.review_manually(self.dispute.id, "uphold", "admin",
                                          "checked by hand")
        assert d.status == "upheld"
        assert not self.book.has_escalation(self.res.id)
        assert self.res.status == "resolved"

    def test_reviewing_lease_is_dropped(self):
        self.dispute.status = "reviewing"
        self.dispute.lease_owner = "consumer-0"
        self.dispute.lease_expires_at = NOW + 300
        self.reviewer.review_manually(self.dispute.id, "uphold", "admin",
                                      "fine")
        assert self.dispute.lease_owner is None
        assert self.dispute.lease_expires_at is None

    def test_list_disputes(self):
        assert self.book.list_disputes() == [self.dispute]
        assert self.book.list_disputes("pending") == [self.dispute]
        assert self.book.list_disputes("escalated") == []
