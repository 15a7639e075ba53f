"""
Fee distribution. Pure functions over Config and Market, no mutation.

Buy fees are taken from the collateral input, sell fees from the collateral
output. Each fee has two parts:
  platform fee -> insurance allocation (when insurance is enabled) + team
  LP fee       -> stays in the market vault, raises fee_per_share_cumulative

LP fees never mint shares. An LP's claim is
    shares * (fee_per_share_cumulative - last_fee_per_share) / 1e18
plus whatever was parked in unclaimed_fees by an earlier deposit.
"""

from dataclasses import dataclass

from predmarket import fixed_point as fp
from predmarket.errors import ValidationError
from predmarket.models import Config, FeeOverrideParams, LPPosition, Market


@dataclass(frozen=True)
class FeeSchedule:
    platform_buy_fee_bps: int
    platform_sell_fee_bps: int
    lp_buy_fee_bps: int
    lp_sell_fee_bps: int


@dataclass(frozen=True)
class FeeSplit:
    gross: int
    platform_fee: int
    lp_fee: int
    insurance_fee: int
    team_fee: int
    net: int

    @property
    def total_fee(self) -> int:
        return self.platform_fee + self.lp_fee


def validate_fee_bps(platform_buy: int, platform_sell: int,
                     lp_buy: int, lp_sell: int) -> None:
    for name, value in (("platform_buy_fee_bps", platform_buy),
                        ("platform_sell_fee_bps", platform_sell),
                        ("lp_buy_fee_bps", lp_buy),
                        ("lp_sell_fee_bps", lp_sell)):
        if not 0 <= value <= fp.BPS_DENOMINATOR:
            raise ValidationError(
                f"invalid bps: {name}={value} (must be 0..10000)",
                code="invalid_bps")
    if platform_buy + lp_buy >= fp.BPS_DENOMINATOR:
        raise ValidationError("invalid bps: buy fees must total under 10000",
                              code="invalid_bps")
    if platform_sell + lp_sell >= fp.BPS_DENOMINATOR:
        raise ValidationError("invalid bps: sell fees must total under 10000",
                              code="invalid_bps")


def validate_override(params: FeeOverrideParams) -> None:
    validate_fee_bps(params.platform_buy_fee_bps, params.platform_sell_fee_bps,
                     params.lp_buy_fee_bps, params.lp_sell_fee_bps)


def fee_schedule(config: Config, market: Market) -> FeeSchedule:
    """Market override when enabled, global defaults otherwise."""
    o = market.fee_override
    if o.enabled:
        return FeeSchedule(o.platform_buy_fee_bps, o.platform_sell_fee_bps,
                           o.lp_buy_fee_bps, o.lp_sell_fee_bps)
    return FeeSchedule(config.platform_buy_fee_bps,
                       config.platform_sell_fee_bps,
                       config.lp_buy_fee_bps, config.lp_sell_fee_bps)


def split(config: Config, amount: int, platform_bps: int,
          lp_bps: int) -> FeeSplit:
    if amount < 0:
        raise ValidationError("fee base must be non-negative")
    platform_fee = fp.apply_bps(amount, platform_bps)
    lp_fee = fp.apply_bps(amount, lp_bps)
    insurance_fee = 0
    if config.insurance_enabled:
        insurance_fee = fp.apply_bps(platform_fee,
                                     config.lp_insurance_allocation_bps)
    return FeeSplit(
        gross=amount,
        platform_fee=platform_fee,
        lp_fee=lp_fee,
        insurance_fee=insurance_fee,
        team_fee=platform_fee - insurance_fee,
        net=amount - platform_fee - lp_fee,
    )


def buy_fees(config: Config, market: Market, amount_in: int) -> FeeSplit:
    s = fee_schedule(config, market)
    return split(config, amount_in, s.platform_buy_fee_bps, s.lp_buy_fee_bps)


def sell_fees(config: Config, market: Market, payout: int) -> FeeSplit:
    s = fee_schedule(config, market)
    return split(config, payout, s.platform_sell_fee_bps, s.lp_sell_fee_bps)


# ---------------------------------------------------------------------------
# LP fee accounting
# ---------------------------------------------------------------------------

def fee_per_share_increment(lp_fee: int, total_lp_shares: int) -> int:
    if lp_fee <= 0 or total_lp_shares <= 0:
        return 0
    return fp.mul_div(lp_fee, fp.FEE_PER_SHARE_PRECISION, total_lp_shares)


def pending_fees(position: LPPosition, market: Market) -> int:
    """Fees the position can claim right now."""
    delta = market.fee_per_share_cumulative - position.last_fee_per_share
    accrued = fp.mul_div(position.lp_shares, delta,
                         fp.FEE_PER_SHARE_PRECISION)
    return accrued + position.unclaimed_fees
