"""
LMSR (Logarithmic Market Scoring Rule) for a binary market. Pure math, no state.

Quantities and b are ints in micro-units. Cost functions return Decimal
micro-units; the *_quote helpers round to whole micro-units with the
rounding always favoring the pool.

Notation:
    q: {"yes": int, "no": int}, net tokens sold by the AMM (may be negative)
    b: depth parameter (higher = deeper market, max loss = b * ln 2)
"""

from decimal import Decimal, localcontext

from predmarket import fixed_point as fp


YES = "yes"
NO = "no"
OUTCOMES = (YES, NO)

# Time-weighted depth: markets deepen as expiry approaches.
_HOUR = 3600
DEPTH_SCHEDULE = (
    (72 * _HOUR, Decimal("1.5")),
    (7 * 24 * _HOUR, Decimal("1.2")),
)

MIN_INITIAL_PROBABILITY_BPS = 2000
MAX_INITIAL_PROBABILITY_BPS = 8000


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check(q: dict[str, int], b: int) -> None:
    if b <= 0:
        raise ValueError(f"b must be positive, got {b}")
    if set(q) != set(OUTCOMES):
        raise ValueError(f"q must have exactly {OUTCOMES}, got {sorted(q)}")


def _exp_terms(q: dict[str, int], b: int) -> dict[str, Decimal]:
    """e^((q_i - min q) / b) per outcome. Normalized so the largest term
    is the only one that can grow, which keeps exp() bounded."""
    m = min(q.values())
    bd = Decimal(b)
    with localcontext(fp.CONTEXT):
        return {k: fp.exp(Decimal(v - m) / bd) for k, v in q.items()}


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def cost(q: dict[str, int], b: int) -> Decimal:
    """
    C(q) = b * ln(e^(q_yes/b) + e^(q_no/b)), computed as
    min(q) + b * ln(sum of normalized terms).
    """
    _check(q, b)
    terms = _exp_terms(q, b)
    with localcontext(fp.CONTEXT):
        return Decimal(min(q.values())) + Decimal(b) * fp.ln(sum(terms.values()))


def prices(q: dict[str, int], b: int) -> dict[str, Decimal]:
    """
    Softmax over q/b. p_no is computed as 1 - p_yes so the pair sums to
    exactly 1.
    """
    _check(q, b)
    terms = _exp_terms(q, b)
    with localcontext(fp.CONTEXT):
        p_yes = terms[YES] / (terms[YES] + terms[NO])
        return {YES: p_yes, NO: fp.ONE - p_yes}


def cost_to_buy(q: dict[str, int], b: int, outcome: str,
                amount: int) -> Decimal:
    """
    Collateral required to buy `amount` tokens of `outcome`:
    C(q_after) - C(q_before). Negative amount = sell, returns negative.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"unknown outcome: {outcome}")
    q_after = dict(q)
    q_after[outcome] += amount
    with localcontext(fp.CONTEXT):
        return cost(q_after, b) - cost(q, b)


def amount_for_cost(q: dict[str, int], b: int, outcome: str,
                    budget: int) -> Decimal:
    """
    Inverse of cost_to_buy. Tokens purchasable with `budget`:

        amount = b * ln(S * (e^(budget/b) - 1) / e_o + 1)

    where S = sum of e^(q_i/b) and e_o = e^(q_outcome/b), both normalized.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"unknown outcome: {outcome}")
    _check(q, b)
    terms = _exp_terms(q, b)
    bd = Decimal(b)
    with localcontext(fp.CONTEXT):
        s = sum(terms.values())
        inner = s * (fp.exp(Decimal(budget) / bd) - 1) / terms[outcome] + 1
        if inner <= fp.ZERO:
            raise ValueError("budget exceeds what the outcome can return")
        return bd * fp.ln(inner)


# ---------------------------------------------------------------------------
# Quotes (integer micro-units)
# ---------------------------------------------------------------------------

def buy_quote(q: dict[str, int], b: int, outcome: str,
              budget: int) -> tuple[int, Decimal]:
    """
    Whole tokens bought with `budget` net collateral, and their exact cost.
    Tokens round down; the result always satisfies cost <= budget.
    """
    if budget <= 0:
        raise ValueError("budget must be positive")
    tokens = fp.floor_int(amount_for_cost(q, b, outcome, budget))
    exact = cost_to_buy(q, b, outcome, tokens)
    while tokens > 0 and exact > budget:
        tokens -= 1
        exact = cost_to_buy(q, b, outcome, tokens)
    if tokens <= 0:
        raise ValueError("budget too small for any tokens")
    return tokens, exact


def sell_quote(q: dict[str, int], b: int, outcome: str,
               amount: int) -> int:
    """Collateral returned for selling `amount` tokens, rounded down."""
    if amount <= 0:
        raise ValueError("sell amount must be positive")
    return max(0, fp.floor_int(-cost_to_buy(q, b, outcome, -amount)))


# ---------------------------------------------------------------------------
# Market parameters
# ---------------------------------------------------------------------------

def effective_b(b: int, now: int, end_ts: int | None) -> int:
    """Depth actually used for pricing at `now`."""
    if end_ts is None:
        return b
    remaining = end_ts - now
    for window, multiplier in DEPTH_SCHEDULE:
        if remaining < window:
            return fp.floor_int(Decimal(b) * multiplier)
    return b


def initial_q(b: int, probability_bps: int) -> dict[str, int]:
    """
    Starting quantities that price YES at `probability_bps`.
    q_yes = b * ln(p / (1 - p)), q_no = 0.
    """
    if not (MIN_INITIAL_PROBABILITY_BPS <= probability_bps
            <= MAX_INITIAL_PROBABILITY_BPS):
        raise ValueError(
            f"initial probability must be between "
            f"{MIN_INITIAL_PROBABILITY_BPS} and "
            f"{MAX_INITIAL_PROBABILITY_BPS} bps")
    if probability_bps == fp.BPS_DENOMINATOR // 2:
        return {YES: 0, NO: 0}
    with localcontext(fp.CONTEXT):
        p = Decimal(probability_bps) / fp.BPS_DENOMINATOR
        q_yes = Decimal(b) * fp.ln(p / (1 - p))
    return {YES: fp.floor_int(q_yes), NO: 0}
