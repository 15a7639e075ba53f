"""
Resolution oracle. Turns fetched evidence into a YES/NO result with a
per-condition trace.

Evaluation is strictly literal:
  - a condition is met when its phrase appears (case-insensitive,
    whitespace-normalized) in a successfully fetched source
  - if any `unless` phrase appears in the same source the evidence is
    ambiguous, and ambiguity counts as not met / not triggered
  - no evidence means not met / not triggered
Every determination carries the sentence that justified it.

final_result comes from the criteria's machine logic, a small boolean
language:

    expr  := or
    or    := and ("or" and)*
    and   := unary ("and" unary)*
    unary := "not" unary | atom
    atom  := "(" expr ")" | "true" | "false"
           | ("all" | "any") "(" list ")"
           | list "[" index "]"
    list  := "must_meet_all" | "must_not_count"

The expression selects `then` when true and `otherwise` when false.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone

from predmarket.errors import EvidenceFetchError, NotFoundError, ValidationError
from predmarket.evidence import EvidenceFetcher, is_https
from predmarket.models import (
    AuditRecord, Condition, ConditionResult, Dispute, DISPUTE_ESCALATED,
    DISPUTE_PENDING, DISPUTE_REVIEWING, Evidence, ExclusionResult,
    Resolution, ResolutionCriteria,
)

logger = logging.getLogger(__name__)


DISPUTE_WINDOW_SECONDS = 24 * 3600
RESULTS = ("YES", "NO")
LISTS = ("must_meet_all", "must_not_count")

RESOLUTION_RESOLVED = "resolved"
RESOLUTION_DISPUTED = "disputed"
RESOLUTION_FINALIZED = "finalized"


# ---------------------------------------------------------------------------
# Logic expressions
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\s*(\(|\)|\[|\]|\d+|[A-Za-z_]+)")


def _tokenize(expression: str) -> list[str]:
    tokens, pos = [], 0
    expression = expression.strip()
    while pos < len(expression):
        m = _TOKEN_RE.match(expression, pos)
        if m is None:
            raise ValidationError(
                f"unexpected character in logic at {pos}: "
                f"{expression[pos:pos + 10]!r}", code="invalid_logic")
        tokens.append(m.group(1).lower())
        pos = m.end()
        while pos < len(expression) and expression[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    """Recursive descent over the token list. Produces a tuple AST."""

    def __init__(self, tokens: list[str]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, expected: str | None = None) -> str:
        tok = self._peek()
        if tok is None or (expected is not None and tok != expected):
            raise ValidationError(
                f"expected {expected or 'a token'} in logic, got {tok!r}",
                code="invalid_logic")
        self.pos += 1
        return tok

    def parse(self) -> tuple:
        node = self._or()
        if self._peek() is not None:
            raise ValidationError(f"unexpected {self._peek()!r} in logic",
                                  code="invalid_logic")
        return node

    def _or(self) -> tuple:
        node = self._and()
        while self._peek() == "or":
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._unary()
        while self._peek() == "and":
            self._take()
            node = ("and", node, self._unary())
        return node

    def _unary(self) -> tuple:
        if self._peek() == "not":
            self._take()
            return ("not", self._unary())
        return self._atom()

    def _list_name(self) -> str:
        name = self._take()
        if name not in LISTS:
            raise ValidationError(f"unknown condition list {name!r}",
                                  code="invalid_logic")
        return name

    def _atom(self) -> tuple:
        tok = self._take()
        if tok == "(":
            node = self._or()
            self._take(")")
            return node
        if tok in ("true", "false"):
            return ("const", tok == "true")
        if tok in ("all", "any"):
            self._take("(")
            name = self._list_name()
            self._take(")")
            return (tok, name)
        if tok in LISTS:
            self._take("[")
            index = self._take()
            if not index.isdigit():
                raise ValidationError(f"bad index {index!r} in logic",
                                      code="invalid_logic")
            self._take("]")
            return ("item", tok, int(index))
        raise ValidationError(f"unexpected {tok!r} in logic",
                              code="invalid_logic")


def parse_logic(expression: str) -> tuple:
    tokens = _tokenize(expression)
    if not tokens:
        raise ValidationError("logic expression is empty",
                              code="invalid_logic")
    return _Parser(tokens).parse()


def eval_logic(node: tuple, values: dict[str, list[bool]]) -> bool:
    kind = node[0]
    if kind == "const":
        return node[1]
    if kind == "not":
        return not eval_logic(node[1], values)
    if kind == "and":
        return eval_logic(node[1], values) and eval_logic(node[2], values)
    if kind == "or":
        return eval_logic(node[1], values) or eval_logic(node[2], values)
    if kind == "all":
        return all(values[node[1]])
    if kind == "any":
        return any(values[node[1]])
    if kind == "item":
        items = values[node[1]]
        if node[2] >= len(items):
            raise ValidationError(
                f"{node[1]}[{node[2]}] out of range ({len(items)} conditions)",
                code="invalid_logic")
        return items[node[2]]
    raise ValidationError(f"unknown logic node {kind!r}", code="invalid_logic")


def validate_criteria(criteria: ResolutionCriteria) -> tuple:
    """Reject malformed criteria up front. Returns the parsed logic."""
    if not criteria.must_meet_all:
        raise ValidationError("criteria need at least one must_meet_all "
                              "condition", code="invalid_criteria")
    for cond in criteria.must_meet_all + criteria.must_not_count:
        if not cond.phrase.strip():
            raise ValidationError("condition phrase must not be empty",
                                  code="invalid_criteria")
    if not criteria.allowed_sources:
        raise ValidationError("criteria need at least one evidence source",
                              code="invalid_criteria")
    for source in criteria.allowed_sources:
        if not is_https(source.url):
            raise ValidationError(f"evidence source must be https: "
                                  f"{source.url}", code="invalid_criteria")
    logic = criteria.logic
    if logic.then not in RESULTS or logic.otherwise not in RESULTS:
        raise ValidationError("logic then/else must be YES or NO",
                              code="invalid_criteria")
    tree = parse_logic(logic.expression)
    # evaluate once on all-false inputs to catch out-of-range indexes
    eval_logic(tree, {
        "must_meet_all": [False] * len(criteria.must_meet_all),
        "must_not_count": [False] * len(criteria.must_not_count),
    })
    return tree


# ---------------------------------------------------------------------------
# Literal matching
# ---------------------------------------------------------------------------

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _sentence_with(content: str, phrase: str) -> str:
    target = normalize(phrase)
    for sentence in _SENTENCE_RE.split(content):
        if target in normalize(sentence):
            return " ".join(sentence.split())
    # phrase spans a sentence boundary
    return target


def match_condition(condition: Condition,
                    evidence: list[Evidence]) -> tuple[bool, str]:
    """(matched, justification) over every successfully fetched source."""
    phrase = normalize(condition.phrase)
    found = None
    for ev in evidence:
        if not ev.success:
            continue
        text = normalize(ev.content)
        if phrase not in text:
            continue
        for unless in condition.unless:
            if unless.strip() and normalize(unless) in text:
                snippet = _sentence_with(ev.content, unless)
                return False, (f"ambiguous in {ev.source_name}: "
                               f"\"{snippet}\"")
        if found is None:
            found = (f"{ev.source_name}: "
                     f"\"{_sentence_with(ev.content, condition.phrase)}\"")
    if found is None:
        return False, "no matching evidence in fetched sources"
    return True, found


def evaluate_criteria(criteria: ResolutionCriteria, evidence: list[Evidence],
                      tree: tuple | None = None):
    """
    Pure evaluation. Returns (must_meet_all_results, must_not_count_results,
    final_result, reasoning).
    """
    if tree is None:
        tree = validate_criteria(criteria)
    must = []
    for cond in criteria.must_meet_all:
        met, snippet = match_condition(cond, evidence)
        must.append(ConditionResult(condition=cond.text, met=met,
                                    evidence=snippet))
    excl = []
    for cond in criteria.must_not_count:
        triggered, snippet = match_condition(cond, evidence)
        excl.append(ExclusionResult(condition=cond.text, triggered=triggered,
                                    evidence=snippet))
    outcome = eval_logic(tree, {
        "must_meet_all": [r.met for r in must],
        "must_not_count": [r.triggered for r in excl],
    })
    final = criteria.logic.then if outcome else criteria.logic.otherwise
    met_count = sum(r.met for r in must)
    triggered = [r.condition for r in excl if r.triggered]
    reasoning = (f"{met_count}/{len(must)} required conditions met; "
                 f"exclusions triggered: {triggered or 'none'}; "
                 f"'{criteria.logic.expression}' is "
                 f"{str(outcome).lower()} -> {final}")
    return must, excl, final, reasoning


def evidence_hash(evidence: list[Evidence]) -> str:
    h = hashlib.sha256()
    for ev in evidence:
        if ev.success:
            h.update(ev.content_hash.encode())
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Resolution book
# ---------------------------------------------------------------------------

class ResolutionBook:
    """Off-ledger records: resolutions, disputes and the audit log."""

    def __init__(self):
        self.resolutions: dict[int, Resolution] = {}
        self.disputes: dict[int, Dispute] = {}
        self.audit_log: list[AuditRecord] = []
        self.next_resolution_id = 1
        self.next_dispute_id = 1
        self.next_audit_id = 1

    def record_resolution(self, resolution: Resolution) -> Resolution:
        resolution.id = self.next_resolution_id
        self.next_resolution_id += 1
        self.resolutions[resolution.id] = resolution
        self.audit("resolution_recorded", "resolution", str(resolution.id),
                   "oracle", {"market": resolution.market,
                              "final_result": resolution.final_result,
                              "evidence_hash": resolution.evidence_hash})
        return resolution

    def get_resolution(self, resolution_id: int) -> Resolution:
        res = self.resolutions.get(resolution_id)
        if res is None:
            raise NotFoundError(f"resolution {resolution_id} not found")
        return res

    def resolution_for_market(self, market: str) -> Resolution | None:
        matches = [r for r in self.resolutions.values() if r.market == market]
        return matches[-1] if matches else None

    def add_dispute(self, resolution_id: int, user: str, reason: str,
                    evidence_urls: list[str]) -> Dispute:
        dispute = Dispute(id=self.next_dispute_id,
                          resolution_id=resolution_id, user=user,
                          reason=reason, evidence_urls=list(evidence_urls))
        self.next_dispute_id += 1
        self.disputes[dispute.id] = dispute
        return dispute

    def get_dispute(self, dispute_id: int) -> Dispute:
        dispute = self.disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError(f"dispute {dispute_id} not found")
        return dispute

    def disputes_for(self, resolution_id: int) -> list[Dispute]:
        return [d for d in self.disputes.values()
                if d.resolution_id == resolution_id]

    def list_disputes(self, status: str | None = None) -> list[Dispute]:
        return [d for d in self.disputes.values()
                if status is None or d.status == status]

    def active_disputes(self, resolution_id: int) -> list[Dispute]:
        return [d for d in self.disputes_for(resolution_id)
                if d.status in (DISPUTE_PENDING, DISPUTE_REVIEWING)]

    def has_escalation(self, resolution_id: int) -> bool:
        return any(d.status == DISPUTE_ESCALATED
                   for d in self.disputes_for(resolution_id))

    def audit(self, action: str, entity_type: str, entity_id: str,
              actor: str, details: dict | None = None) -> AuditRecord:
        record = AuditRecord(id=self.next_audit_id, action=action,
                             entity_type=entity_type, entity_id=entity_id,
                             actor=actor, details=details or {})
        self.next_audit_id += 1
        self.audit_log.append(record)
        return record

    def audit_for(self, entity_type: str, entity_id: str) -> list[AuditRecord]:
        return [a for a in self.audit_log
                if a.entity_type == entity_type and a.entity_id == entity_id]


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class ResolutionOracle:

    def __init__(self, book: ResolutionBook, fetcher: EvidenceFetcher,
                 dispute_window_seconds: int = DISPUTE_WINDOW_SECONDS):
        self.book = book
        self.fetcher = fetcher
        self.dispute_window_seconds = dispute_window_seconds

    async def resolve(self, market: str, question: str,
                      criteria: ResolutionCriteria, now: int,
                      actor: str = "oracle") -> Resolution:
        """
        Fetch evidence and evaluate. The returned Resolution is not stored:
        callers record it once the ledger accepts the outcome.
        """
        tree = validate_criteria(criteria)
        evidence = await self.fetcher.fetch_sources(criteria.allowed_sources)
        if not any(ev.success for ev in evidence):
            self.book.audit("resolution_failed", "market", market, actor, {
                "sources": [{"url": ev.source_url, "error": ev.error}
                            for ev in evidence],
            })
            logger.error("resolution failed for %s: no source could be "
                         "fetched", market)
            raise EvidenceFetchError(
                f"no evidence source could be fetched for market {market}")

        must, excl, final, reasoning = evaluate_criteria(criteria, evidence,
                                                         tree)
        logger.info("market %s evaluated %s from %d/%d sources", market,
                    final, sum(ev.success for ev in evidence), len(evidence))
        return Resolution(
            id=0,
            market=market,
            question=question,
            criteria=criteria,
            evidence_hash=evidence_hash(evidence),
            evidence_sources=[{
                "name": ev.source_name,
                "url": ev.source_url,
                "success": ev.success,
                "content_hash": ev.content_hash,
                "http_status": ev.http_status,
                "error": ev.error,
            } for ev in evidence],
            must_meet_all_results=must,
            must_not_count_results=excl,
            final_result=final,
            reasoning=reasoning,
            status=RESOLUTION_RESOLVED,
            resolved_at=datetime.fromtimestamp(now, timezone.utc).isoformat(),
            dispute_window_ends=now + self.dispute_window_seconds,
        )
