"""
Risk guard: withdrawal tiers, circuit breaker and swap bounds.

All checks are pure over a Market snapshot plus the projected state of the
operation being checked. Nothing here mutates; the engine applies breaker
activation and window bookkeeping after a check passes.

Imbalance ratio = larger / smaller * 100 over the pool's YES/NO inventory
(100 = balanced). The breaker trips on any of:
  - ratio >= 4:1
  - either inventory side below 10% of its initial reserve
  - withdrawals in the rolling 24h window above 50% of pool value
"""

import logging

from predmarket import fixed_point as fp
from predmarket.errors import EngineError, MarketStateError, RiskGuardError
from predmarket.liquidity import inventory_value, pool_value, simulate_withdraw
from predmarket.lmsr import YES, NO, effective_b
from predmarket.models import Config, LPPosition, Market

logger = logging.getLogger(__name__)


RATIO_SCALE = 100
BREAKER_RATIO = 4
RESET_RATIO_NUMERATOR = 7           # reset allowed below 7:2 (3.5:1)
RESET_RATIO_DENOMINATOR = 2
MIN_RESERVE_BPS = 1_000
WITHDRAW_WINDOW_SECONDS = 24 * 3600
WITHDRAW_WINDOW_LIMIT_BPS = 5_000
BREAKER_COOLDOWN_SECONDS = 24 * 3600
MAX_SINGLE_TRADE_BPS = 1_000
MAX_Q_SPREAD_MULTIPLE = 2

# (ratio upper bound, max withdraw bps of total_lp_shares)
WITHDRAW_TIERS = (
    (150, 3_000),
    (200, 2_000),
    (300, 1_000),
)
HIGH_IMBALANCE_MAX_WITHDRAW_BPS = 500

UNBOUNDED_RATIO = 2 ** 63


def _reject(message: str, code: str, **details) -> RiskGuardError:
    logger.warning("risk guard rejected: %s (%s) %s", message, code, details)
    return RiskGuardError(message, code=code, details=details or None)


# ---------------------------------------------------------------------------
# Ratios and tiers
# ---------------------------------------------------------------------------

def imbalance_ratio(pool_yes: int, pool_no: int) -> int:
    larger, smaller = max(pool_yes, pool_no), min(pool_yes, pool_no)
    if larger == 0:
        return RATIO_SCALE
    if smaller == 0:
        return UNBOUNDED_RATIO
    return larger * RATIO_SCALE // smaller


def max_withdraw_bps(ratio: int) -> int:
    for bound, bps in WITHDRAW_TIERS:
        if ratio < bound:
            return bps
    return HIGH_IMBALANCE_MAX_WITHDRAW_BPS


def tier_share_cap(market: Market) -> int:
    ratio = imbalance_ratio(market.pool_yes, market.pool_no)
    return fp.mul_div(market.total_lp_shares, max_withdraw_bps(ratio),
                      fp.BPS_DENOMINATOR)


# ---------------------------------------------------------------------------
# Circuit breaker conditions
# ---------------------------------------------------------------------------

def trip_reasons(market: Market, pool_yes: int, pool_no: int,
                 window_total: int, value: int) -> list[str]:
    """Breaker conditions that hold for the given pool state."""
    reasons = []
    larger, smaller = max(pool_yes, pool_no), min(pool_yes, pool_no)
    if larger > 0 and larger >= BREAKER_RATIO * smaller:
        reasons.append("imbalance")
    for held, initial in ((pool_yes, market.initial_yes_reserve),
                          (pool_no, market.initial_no_reserve)):
        if initial > 0 and held * fp.BPS_DENOMINATOR < initial * MIN_RESERVE_BPS:
            reasons.append("reserve_depleted")
            break
    if window_total * fp.BPS_DENOMINATOR > value * WITHDRAW_WINDOW_LIMIT_BPS:
        reasons.append("withdraw_volume")
    return reasons


def current_trip_reasons(market: Market, now: int) -> list[str]:
    if market.finalized or not market.seeded:
        return []
    return trip_reasons(market, market.pool_yes, market.pool_no,
                        window_total(market, now), pool_value(market, now))


def window_total(market: Market, now: int) -> int:
    """Withdrawals counted in the current 24h window."""
    if now - market.withdraw_window_start >= WITHDRAW_WINDOW_SECONDS:
        return 0
    return market.withdraw_window_total


def projected_window(market: Market, amount: int, now: int) -> tuple[int, int]:
    """(window_start, window_total) after recording a withdrawal of `amount`."""
    if now - market.withdraw_window_start >= WITHDRAW_WINDOW_SECONDS:
        return now, amount
    return market.withdraw_window_start, market.withdraw_window_total + amount


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

def withdraw_trip_reasons(market: Market, quote, now: int) -> list[str]:
    b = effective_b(market.b, now, market.end_ts)
    value_after = quote.pool_collateral_after + inventory_value(
        quote.q_after, b, quote.pool_yes_after, quote.pool_no_after)
    _, total = projected_window(market, quote.final_out, now)
    return trip_reasons(market, quote.pool_yes_after, quote.pool_no_after,
                        total, value_after)


def check_withdraw(market: Market, quote, now: int) -> None:
    """Raise RiskGuardError unless the quoted withdrawal may proceed."""
    if market.finalized:
        return
    if market.circuit_breaker_active:
        raise _reject("circuit breaker active", "circuit_breaker_active",
                      market=market.address)
    cap = tier_share_cap(market)
    if quote.shares > cap:
        raise _reject(
            f"withdrawal of {quote.shares} shares exceeds tier limit {cap}",
            "excessive_withdrawal", max_withdraw_shares=cap)
    reasons = withdraw_trip_reasons(market, quote, now)
    if reasons:
        raise _reject("withdrawal would trigger circuit breaker",
                      "would_trigger_circuit_breaker", reasons=reasons)


def _withdraw_passes(config: Config, market: Market, position: LPPosition,
                     shares: int, now: int) -> bool:
    try:
        quote = simulate_withdraw(config, market, position, shares, now)
    except EngineError:
        return False
    return not withdraw_trip_reasons(market, quote, now)


def max_withdraw_shares(config: Config, market: Market, position: LPPosition,
                        now: int) -> int:
    """
    Largest share count this position can withdraw right now without
    breaching its tier, its holdings or any breaker condition. Binary
    search over simulate_withdraw, so the answer is a point the
    simulation itself accepted.
    """
    free = market.total_lp_shares - market.locked_lp_shares
    if market.finalized:
        return min(position.lp_shares, free)
    if market.circuit_breaker_active:
        return 0
    hi = min(position.lp_shares, tier_share_cap(market), free)
    lo = 0
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if _withdraw_passes(config, market, position, mid, now):
            lo = mid
        else:
            hi = mid - 1
    return lo


# ---------------------------------------------------------------------------
# Swaps
# ---------------------------------------------------------------------------

def check_swap(config: Config, market: Market, *, direction: str,
               collateral_value: int, q_after: dict[str, int],
               pool_yes_after: int, pool_no_after: int,
               vault_balance_after: int, now: int) -> None:
    """
    Bounds on a single swap. `collateral_value` is the collateral side of
    the trade (buy: amount in, sell: gross payout).
    """
    value = pool_value(market, now)
    if collateral_value * fp.BPS_DENOMINATOR > value * MAX_SINGLE_TRADE_BPS:
        raise _reject("trade exceeds maximum share of pool value",
                      "trade_too_large", pool_value=value)
    b = effective_b(market.b, now, market.end_ts)
    if abs(q_after[YES] - q_after[NO]) > MAX_Q_SPREAD_MULTIPLE * b:
        raise _reject("trade moves price beyond the depth limit",
                      "excessive_price_impact")
    before = imbalance_ratio(market.pool_yes, market.pool_no)
    after = imbalance_ratio(pool_yes_after, pool_no_after)
    if after >= BREAKER_RATIO * RATIO_SCALE and after > before:
        raise _reject("trade would push pool imbalance past 4:1",
                      "imbalance_limit", ratio=after)
    if direction == "sell" and vault_balance_after < config.vault_min_balance:
        raise _reject("projected vault balance below minimum",
                      "vault_min_balance",
                      vault_balance_after=vault_balance_after)


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------

def check_reset(market: Market, now: int) -> None:
    if not market.circuit_breaker_active:
        raise MarketStateError("circuit breaker is not active",
                               code="circuit_breaker_inactive")
    elapsed = now - (market.circuit_breaker_triggered_at or 0)
    if elapsed < BREAKER_COOLDOWN_SECONDS:
        raise _reject("circuit breaker cooldown has not elapsed",
                      "cooldown_active",
                      remaining_seconds=BREAKER_COOLDOWN_SECONDS - elapsed)
    larger = max(market.pool_yes, market.pool_no)
    smaller = min(market.pool_yes, market.pool_no)
    if larger * RESET_RATIO_DENOMINATOR >= smaller * RESET_RATIO_NUMERATOR:
        raise _reject("pool is still imbalanced", "pool_imbalanced",
                      ratio=imbalance_ratio(market.pool_yes, market.pool_no))
