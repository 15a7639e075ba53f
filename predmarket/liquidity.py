"""
Liquidity ledger math. Pure functions: they read a Market / LPPosition /
Config snapshot and return quotes. The market engine applies them.

Pool valuation:
    pool_value = pool_collateral + pool_yes * p_yes + pool_no * p_no
priced at the current effective depth. Deposits mint shares pro rata to
pool_value; an empty pool requires a bootstrap deposit that permanently
locks MINIMUM_LIQUIDITY shares, so total_lp_shares never returns to zero.

Withdrawal (simulate_withdraw):
  1. Take shares/total of pool collateral, YES and NO.
  2. Redeem matched YES+NO pairs 1:1.
  3. Sell the leftover single side back into the pool, fee-free. The pool
     redeems its own sets if it lacks the collateral to pay.
  4. gross = collateral + pairs + leftover proceeds.
  5. Early-exit penalty on gross, by time since the first deposit. The
     penalty stays in the pool.
  6. Insurance tops up losses beyond the threshold, capped three ways.
Pending LP fees are paid alongside but are not part of gross.
"""

from dataclasses import dataclass, field
from decimal import Decimal, localcontext

from predmarket import fixed_point as fp
from predmarket.errors import InsufficientBalance, LiquidityError, ValidationError
from predmarket.fees import pending_fees
from predmarket.lmsr import YES, NO, effective_b, prices, sell_quote
from predmarket.models import Config, LPPosition, Market


MINIMUM_LIQUIDITY = 1_000

DAY = 24 * 3600
EXIT_PENALTY_SCHEDULE = (
    (7 * DAY, 300),
    (14 * DAY, 150),
    (30 * DAY, 50),
)


# ---------------------------------------------------------------------------
# Valuation
# ---------------------------------------------------------------------------

def market_prices(market: Market, now: int) -> dict[str, Decimal]:
    return prices(market.q, effective_b(market.b, now, market.end_ts))


def inventory_value(q: dict[str, int], b: int, pool_yes: int,
                    pool_no: int) -> int:
    """Value of the pool's tokens at marginal prices, rounded down."""
    if pool_yes == 0 and pool_no == 0:
        return 0
    p_yes = prices(q, b)[YES]
    # pool_no + (pool_yes - pool_no) * p_yes keeps balanced pools exact
    with localcontext(fp.CONTEXT):
        value = Decimal(pool_no) + Decimal(pool_yes - pool_no) * p_yes
    return fp.floor_int(value)


def pool_value(market: Market, now: int) -> int:
    b = effective_b(market.b, now, market.end_ts)
    return market.pool_collateral + inventory_value(
        market.q, b, market.pool_yes, market.pool_no)


def bootstrap_minimum(config: Config) -> int:
    return max(config.min_liquidity, MINIMUM_LIQUIDITY + 1)


def shares_for_deposit(market: Market, amount: int, now: int) -> int:
    """LP shares minted for `amount` collateral into a seeded pool."""
    if not market.seeded:
        raise LiquidityError("pool is not seeded", code="pool_not_seeded")
    value = pool_value(market, now)
    if value <= 0:
        raise LiquidityError("pool has no value to price shares against")
    return fp.mul_div(amount, market.total_lp_shares, value)


# ---------------------------------------------------------------------------
# Exit penalty + insurance
# ---------------------------------------------------------------------------

def exit_penalty_bps(holding_seconds: int) -> int:
    """300 bps under 7 days, 150 under 14, 50 under 30, then zero."""
    for limit, bps in EXIT_PENALTY_SCHEDULE:
        if holding_seconds < limit:
            return bps
    return 0


def insurance_compensation(config: Config, market: Market,
                           invested_share: int, after_penalty: int) -> int:
    if not config.insurance_enabled or invested_share <= 0:
        return 0
    if after_penalty >= invested_share:
        return 0
    loss = invested_share - after_penalty
    loss_bps = fp.mul_div(loss, fp.BPS_DENOMINATOR, invested_share)
    if loss_bps <= config.insurance_loss_threshold_bps:
        return 0
    return min(
        fp.apply_bps(loss, config.insurance_max_compensation_bps),
        config.insurance_pool_balance,
        market.insurance_contribution,
    )


# ---------------------------------------------------------------------------
# Withdrawal simulation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WithdrawQuote:
    shares: int
    collateral_share: int
    yes_share: int
    no_share: int
    paired: int
    leftover_yes: int
    leftover_no: int
    leftover_proceeds: int
    internal_slippage_bps: int
    gross: int
    holding_seconds: int
    penalty_bps: int
    penalty: int
    invested_share: int
    insurance_compensation: int
    final_out: int
    fees_out: int
    # projected pool state after the withdrawal
    pool_collateral_after: int
    pool_yes_after: int
    pool_no_after: int
    collateral_locked_after: int
    total_lp_shares_after: int
    q_after: dict[str, int] = field(default_factory=dict)

    @property
    def vault_outflow(self) -> int:
        return self.final_out + self.fees_out


def simulate_withdraw(config: Config, market: Market, position: LPPosition,
                      shares: int, now: int) -> WithdrawQuote:
    if shares <= 0:
        raise LiquidityError("zero withdrawable shares",
                             code="zero_withdrawable_shares")
    if shares > position.lp_shares:
        raise InsufficientBalance(
            f"position holds {position.lp_shares} shares, "
            f"requested {shares}")
    total = market.total_lp_shares
    if shares > total - market.locked_lp_shares:
        raise ValidationError("cannot withdraw locked bootstrap shares")

    collateral_share = fp.mul_div(market.pool_collateral, shares, total)
    yes_share = fp.mul_div(market.pool_yes, shares, total)
    no_share = fp.mul_div(market.pool_no, shares, total)

    pool_c = market.pool_collateral - collateral_share
    pool_y = market.pool_yes - yes_share
    pool_n = market.pool_no - no_share

    paired = min(yes_share, no_share)
    leftover_yes = yes_share - paired
    leftover_no = no_share - paired
    locked = market.total_collateral_locked - paired
    q = dict(market.q)

    leftover_proceeds = 0
    slippage_bps = 0
    side, leftover = (YES, leftover_yes) if leftover_yes else (NO, leftover_no)
    if leftover > 0:
        b = effective_b(market.b, now, market.end_ts)
        leftover_proceeds = sell_quote(q, b, side, leftover)
        q[side] -= leftover
        if side == YES:
            pool_y += leftover
        else:
            pool_n += leftover
        if pool_c < leftover_proceeds:
            needed = leftover_proceeds - pool_c
            if min(pool_y, pool_n) < needed:
                raise LiquidityError(
                    "pool cannot cover the internal conversion of "
                    "leftover tokens")
            pool_y -= needed
            pool_n -= needed
            locked -= needed
            pool_c += needed
        pool_c -= leftover_proceeds
        if leftover_proceeds < leftover:
            slippage_bps = fp.mul_div(leftover - leftover_proceeds,
                                      fp.BPS_DENOMINATOR, leftover)

    gross = collateral_share + paired + leftover_proceeds
    holding = now - position.deposit_ts
    penalty_bps = 0 if market.finalized else exit_penalty_bps(holding)
    penalty = fp.apply_bps(gross, penalty_bps)
    after_penalty = gross - penalty
    pool_c += penalty

    invested_share = fp.mul_div(position.invested_collateral, shares,
                                position.lp_shares)
    compensation = insurance_compensation(config, market, invested_share,
                                          after_penalty)

    return WithdrawQuote(
        shares=shares,
        collateral_share=collateral_share,
        yes_share=yes_share,
        no_share=no_share,
        paired=paired,
        leftover_yes=leftover_yes,
        leftover_no=leftover_no,
        leftover_proceeds=leftover_proceeds,
        internal_slippage_bps=slippage_bps,
        gross=gross,
        holding_seconds=holding,
        penalty_bps=penalty_bps,
        penalty=penalty,
        invested_share=invested_share,
        insurance_compensation=compensation,
        final_out=after_penalty + compensation,
        fees_out=pending_fees(position, market),
        pool_collateral_after=pool_c,
        pool_yes_after=pool_y,
        pool_no_after=pool_n,
        collateral_locked_after=locked,
        total_lp_shares_after=total - shares,
        q_after=q,
    )
