"""
Market engine. Orchestrates every ledger mutation: configuration, market
creation, seeding, complete sets, swaps, liquidity, fees, the circuit
breaker and the resolution lifecycle.

Pricing, liquidity, fee and risk math live in pure modules (lmsr,
liquidity, fees, risk_guard). The engine plans an operation with them,
checks it, then commits. Every public mutation runs inside `_atomic()`,
which keeps pre-images of the entries the operation touches plus a wallet
savepoint and puts them back if anything raises, so a rejected operation
leaves no trace.

Vault conservation, per market:
    wallets.balance(market.vault) == pool_collateral
        + total_collateral_locked + accumulated_lp_fees
        + insurance_contribution

Token conservation, per market:
    total_collateral_locked == pool_yes + sum(user yes) == pool_no + sum(user no)

Pool liquidity:
  - Buying takes tokens from pool inventory. If the pool is short it mints
    complete sets from its own collateral first.
  - Selling returns tokens to the pool and pays from pool collateral. If
    collateral is short the pool redeems complete sets from its inventory.
"""

import copy
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from predmarket import addresses, risk_guard
from predmarket import fixed_point as fp
from predmarket.errors import (
    AuthorizationError, InsufficientBalance, LiquidityError,
    MarketStateError, NotFoundError, RiskGuardError, ValidationError,
)
from predmarket.fees import (
    FeeSplit, buy_fees, fee_per_share_increment, pending_fees, sell_fees,
    validate_fee_bps, validate_override,
)
from predmarket.liquidity import (
    MINIMUM_LIQUIDITY, WithdrawQuote, bootstrap_minimum, pool_value,
    shares_for_deposit, simulate_withdraw,
)
from predmarket.lmsr import (
    YES, NO, buy_quote, effective_b, initial_q, prices, sell_quote,
)
from predmarket.models import (
    Config, ConfigParams, CreateMarketParams, DIRECTIONS, FeeOverride,
    FeeOverrideParams, LPPosition, Market, MARKET_ACTIVE, MARKET_PAUSED,
    MARKET_RESOLVED, OUTCOME_INVALID, OUTCOMES, SwapParams, TOKEN_TYPES,
    UserInfo,
)
from predmarket.wallets import WalletLedger

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Creation policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OpenCreation:
    def permits(self, creator: str) -> bool:
        return True


@dataclass(frozen=True)
class AllowListed:
    admin: str
    allowed: frozenset

    def permits(self, creator: str) -> bool:
        return creator == self.admin or creator in self.allowed


CreationPolicy = Union[OpenCreation, AllowListed]


def creation_policy(config: Config) -> CreationPolicy:
    if not config.whitelist_enabled:
        return OpenCreation()
    return AllowListed(admin=config.admin, allowed=frozenset(config.whitelist))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TradePlan:
    """A fully computed swap. Previews return it; swaps commit it."""
    direction: str
    token_type: str
    amount: int                 # buy: collateral in, sell: tokens in
    tokens: int                 # tokens moved between user and pool
    gross: int                  # buy: amount in, sell: LMSR payout
    fees: FeeSplit
    net: int                    # buy: collateral into LMSR, sell: user payout
    q_after: dict
    pool_collateral_after: int
    pool_yes_after: int
    pool_no_after: int
    collateral_locked_after: int
    price_yes_after: Decimal

    @property
    def amount_out(self) -> int:
        return self.tokens if self.direction == "buy" else self.net


@dataclass(frozen=True)
class WithdrawPreview:
    quote: WithdrawQuote
    imbalance_ratio: int
    max_withdraw_bps: int
    max_withdraw_shares: int
    circuit_breaker_active: bool
    trip_reasons: tuple


@dataclass(frozen=True)
class FeeClaimQuote:
    amount: int
    vault_balance_after: int
    claimable: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class RewardsQuote:
    yes_balance: int
    no_balance: int
    payout: int
    vault_balance_after: int
    claimable: bool
    reason: Optional[str] = None


def _ts(now: Optional[int]) -> int:
    return int(time.time()) if now is None else now


class _UndoLog:
    """
    Pre-images of what one operation touched: the config, each market,
    position and user entry it looked up, and a wallet savepoint. The
    cost follows the operation's footprint, not the ledger's history.
    """

    def __init__(self, engine: "MarketEngine"):
        self.engine = engine
        self.config = copy.deepcopy(engine.config)
        self.wallet_mark = engine.wallets.savepoint()
        self.saved: dict[tuple[str, str], object] = {}

    def remember(self, table: str, key: str) -> None:
        if (table, key) in self.saved:
            return
        entry = getattr(self.engine, table).get(key)
        self.saved[(table, key)] = copy.deepcopy(entry)

    def rollback(self) -> None:
        engine = self.engine
        _restore(engine.config, self.config)
        for (table, key), before in self.saved.items():
            entries = getattr(engine, table)
            current = entries.get(key)
            if before is None:
                entries.pop(key, None)
            elif current is None:
                entries[key] = before
            else:
                _restore(current, before)
        engine.wallets.rollback(self.wallet_mark)


def _restore(target, source) -> None:
    # in place, so references held by callers stay valid
    vars(target).clear()
    vars(target).update(vars(source))


class MarketEngine:

    def __init__(self, config: Config | None = None,
                 wallets: WalletLedger | None = None):
        self.config = config or Config()
        self.wallets = wallets or WalletLedger()
        self.markets: dict[str, Market] = {}
        self.positions: dict[str, LPPosition] = {}
        self.users: dict[str, UserInfo] = {}
        self._undo: Optional[_UndoLog] = None

    @contextmanager
    def _atomic(self):
        """All-or-nothing: undo everything the body touched if it raises."""
        if self._undo is not None:
            yield
            return
        self._undo = undo = _UndoLog(self)
        try:
            yield
        except BaseException:
            undo.rollback()
            raise
        finally:
            self._undo = None

    def _touch(self, table: str, key: str) -> None:
        """Record the pre-image of a markets/positions/users entry."""
        if self._undo is not None:
            self._undo.remember(table, key)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, caller: str, params: ConfigParams) -> Config:
        """First call initializes the engine; later calls are admin-only."""
        with self._atomic():
            if self.config.initialized:
                self._require_admin(caller)
            if not params.admin or not params.team_wallet:
                raise ValidationError("admin and team_wallet are required")
            validate_fee_bps(params.platform_buy_fee_bps,
                             params.platform_sell_fee_bps,
                             params.lp_buy_fee_bps, params.lp_sell_fee_bps)
            for name in ("lp_insurance_allocation_bps",
                         "insurance_loss_threshold_bps",
                         "insurance_max_compensation_bps"):
                value = getattr(params, name)
                if not 0 <= value <= fp.BPS_DENOMINATOR:
                    raise ValidationError(
                        f"invalid bps: {name}={value} (must be 0..10000)",
                        code="invalid_bps")
            if params.vault_min_balance < 0:
                raise ValidationError("vault_min_balance must be >= 0")
            if params.min_liquidity <= 0:
                raise ValidationError("min_liquidity must be positive")
            if params.dispute_window_seconds <= 0:
                raise ValidationError("dispute_window_seconds must be positive")
            if self.config.initialized and params.admin != self.config.admin:
                raise ValidationError(
                    "admin changes go through nominate_admin and accept_admin",
                    code="admin_transfer_required")

            c = self.config
            for name in ("admin", "team_wallet", "collateral_mint",
                         "platform_buy_fee_bps", "platform_sell_fee_bps",
                         "lp_buy_fee_bps", "lp_sell_fee_bps",
                         "whitelist_enabled", "insurance_enabled",
                         "lp_insurance_allocation_bps",
                         "insurance_loss_threshold_bps",
                         "insurance_max_compensation_bps",
                         "vault_min_balance", "min_liquidity",
                         "dispute_window_seconds", "paused"):
                setattr(c, name, getattr(params, name))
            first = not c.initialized
            c.initialized = True
        logger.info("engine %s: admin=%s team_wallet=%s",
                    "initialized" if first else "reconfigured",
                    params.admin, params.team_wallet)
        return self.config

    def nominate_admin(self, caller: str, nominee: str) -> Config:
        """First half of an admin handover. The nominee must accept."""
        with self._atomic():
            self._require_admin(caller)
            if not nominee.strip():
                raise ValidationError("nominee must not be empty")
            if nominee == self.config.admin:
                raise ValidationError(f"{nominee} is already admin",
                                      code="already_admin")
            self.config.pending_admin = nominee
        logger.info("admin nominated: %s -> %s (pending acceptance)",
                    caller, nominee)
        return self.config

    def accept_admin(self, caller: str) -> Config:
        with self._atomic():
            self._require_initialized()
            if not self.config.pending_admin \
                    or caller != self.config.pending_admin:
                raise AuthorizationError(f"{caller} is not the nominated admin",
                                         code="not_nominee")
            previous = self.config.admin
            self.config.admin = caller
            self.config.pending_admin = ""
        logger.info("admin transferred: %s -> %s", previous, caller)
        return self.config

    def set_whitelist(self, caller: str, creators: list[str],
                      enabled: bool | None = None) -> Config:
        with self._atomic():
            self._require_admin(caller)
            self.config.whitelist = sorted(set(creators))
            if enabled is not None:
                self.config.whitelist_enabled = enabled
        return self.config

    def set_paused(self, caller: str, paused: bool) -> None:
        with self._atomic():
            self._require_admin(caller)
            self.config.paused = paused
        logger.info("protocol %s", "paused" if paused else "unpaused")

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def create_market(self, params: CreateMarketParams,
                      now: int | None = None) -> Market:
        now = _ts(now)
        with self._atomic():
            self._require_initialized()
            self._require_live()
            if not creation_policy(self.config).permits(params.creator):
                raise AuthorizationError(
                    f"{params.creator} is not allowed to create markets",
                    code="not_whitelisted")
            if not params.question.strip():
                raise ValidationError("question must not be empty")
            if not params.slug.strip():
                raise ValidationError("slug must not be empty")
            if params.b <= 0:
                raise ValidationError("b must be positive")
            if params.end_ts is not None and params.end_ts <= now:
                raise ValidationError("end_ts must be in the future")
            try:
                q = initial_q(params.b, params.initial_probability_bps)
            except ValueError as e:
                raise ValidationError(str(e))

            yes_token, no_token = addresses.token_addresses(
                params.creator, params.slug)
            address = addresses.market_address(yes_token, no_token)
            self._touch("markets", address)
            if address in self.markets:
                raise ValidationError(
                    f"market {params.slug} already exists for "
                    f"{params.creator}", code="market_exists")

            market = Market(
                address=address,
                creator=params.creator,
                question=params.question,
                slug=params.slug,
                yes_token=yes_token,
                no_token=no_token,
                vault=addresses.vault_address(address),
                b=params.b,
                q=q,
                created_ts=now,
                end_ts=params.end_ts,
            )
            self.markets[address] = market
        logger.info("market created: %s slug=%s b=%d creator=%s",
                    address, params.slug, params.b, params.creator)
        return market

    def pause_market(self, caller: str, market_address: str) -> Market:
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            if market.status != MARKET_ACTIVE:
                raise MarketStateError(
                    f"market {market_address} is {market.status}")
            market.status = MARKET_PAUSED
        logger.info("market paused: %s", market_address)
        return market

    def unpause_market(self, caller: str, market_address: str) -> Market:
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            if market.status != MARKET_PAUSED:
                raise MarketStateError(
                    f"market {market_address} is not paused")
            market.status = MARKET_ACTIVE
        logger.info("market unpaused: %s", market_address)
        return market

    def resolve_market(self, caller: str, market_address: str, outcome: str,
                       now: int | None = None) -> Market:
        """Freeze trading and record the outcome. Payouts wait for finalize."""
        now = _ts(now)
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            if outcome not in OUTCOMES:
                raise ValidationError(f"unknown outcome: {outcome}")
            if market.status == MARKET_RESOLVED:
                raise MarketStateError(
                    f"market {market_address} is already resolved",
                    code="already_resolved")
            if market.end_ts is not None and now < market.end_ts:
                raise MarketStateError(
                    f"market {market_address} ends at {market.end_ts}",
                    code="market_not_expired")
            market.status = MARKET_RESOLVED
            market.outcome = outcome
            market.resolved_ts = now
        logger.info("market resolved: %s outcome=%s", market_address, outcome)
        return market

    def override_outcome(self, market_address: str, outcome: str) -> Market:
        """Replace the outcome after a dispute is overturned."""
        with self._atomic():
            market = self._get_market(market_address)
            if market.status != MARKET_RESOLVED:
                raise MarketStateError(
                    f"market {market_address} is not resolved")
            if market.finalized:
                raise MarketStateError(
                    f"market {market_address} is already finalized",
                    code="already_finalized")
            if outcome not in (YES, NO):
                raise ValidationError(f"unknown outcome: {outcome}")
            previous = market.outcome
            market.outcome = outcome
        logger.info("market outcome overridden: %s %s -> %s",
                    market_address, previous, outcome)
        return market

    def finalize_market(self, caller: str, market_address: str,
                        now: int | None = None) -> Market:
        """
        Close the dispute window and settle the pool's inventory at the
        final outcome: winner 1, loser 0, invalid half.
        """
        now = _ts(now)
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            if market.status != MARKET_RESOLVED:
                raise MarketStateError(
                    f"market {market_address} is not resolved")
            if market.finalized:
                raise MarketStateError(
                    f"market {market_address} is already finalized",
                    code="already_finalized")
            window_end = market.resolved_ts + self.config.dispute_window_seconds
            if now < window_end:
                raise MarketStateError(
                    f"dispute window open until {window_end}",
                    code="dispute_window_open")
            settled = self._settlement_value(market, market.pool_yes,
                                             market.pool_no)
            market.pool_collateral += settled
            market.total_collateral_locked -= settled
            market.pool_yes = 0
            market.pool_no = 0
            market.finalized = True
            market.circuit_breaker_active = False
            market.circuit_breaker_triggered_at = None
        logger.info("market finalized: %s outcome=%s pool_settled=%d",
                    market_address, market.outcome, settled)
        return market

    # ------------------------------------------------------------------
    # Seeding + complete sets
    # ------------------------------------------------------------------

    def seed_pool(self, caller: str, market_address: str, amount: int,
                  now: int | None = None) -> LPPosition:
        now = _ts(now)
        with self._atomic():
            market = self._get_market(market_address)
            if caller not in (market.creator, self.config.admin):
                raise AuthorizationError(
                    "only the creator or admin can seed the pool")
            self._require_tradable(market)
            if market.seeded:
                raise MarketStateError(
                    f"market {market_address} is already seeded",
                    code="already_seeded")
            self._require_trading_open(market, now)
            if amount < bootstrap_minimum(self.config):
                raise LiquidityError(
                    f"seed amount {amount} below minimum "
                    f"{bootstrap_minimum(self.config)}",
                    code="below_bootstrap_minimum")
            position = self._bootstrap(market, caller, amount, now)
        logger.info("pool seeded: %s amount=%d by %s",
                    market_address, amount, caller)
        return position

    def mint_complete_set(self, user: str, market_address: str, amount: int,
                          now: int | None = None) -> UserInfo:
        """Lock `amount` collateral and issue `amount` YES + NO."""
        with self._atomic():
            market = self._get_market(market_address)
            self._require_tradable(market)
            self._require_positive(amount)
            self.wallets.transfer(user, market.vault, amount,
                                  "mint_complete_set", market.address)
            market.total_collateral_locked += amount
            info = self._user(market, user)
            info.yes_balance += amount
            info.no_balance += amount
            info.yes_cost_basis += amount // 2
            info.no_cost_basis += amount - amount // 2
            info.collateral_in += amount
        return info

    def redeem_complete_set(self, user: str, market_address: str, amount: int,
                            now: int | None = None) -> UserInfo:
        """Burn `amount` YES + NO and release `amount` collateral."""
        with self._atomic():
            self._require_live()
            market = self._get_market(market_address)
            if market.finalized:
                raise MarketStateError(
                    "market is finalized; use claim_rewards",
                    code="already_finalized")
            self._require_positive(amount)
            info = self._user(market, user)
            if info.yes_balance < amount or info.no_balance < amount:
                raise InsufficientBalance(
                    f"need {amount} YES and NO, have "
                    f"{info.yes_balance} / {info.no_balance}")
            yes_basis = fp.mul_div(info.yes_cost_basis, amount,
                                   info.yes_balance)
            no_basis = fp.mul_div(info.no_cost_basis, amount, info.no_balance)
            info.yes_balance -= amount
            info.no_balance -= amount
            info.yes_cost_basis -= yes_basis
            info.no_cost_basis -= no_basis
            info.realized_pnl += amount - yes_basis - no_basis
            info.collateral_out += amount
            market.total_collateral_locked -= amount
            self.wallets.transfer(market.vault, user, amount,
                                  "redeem_complete_set", market.address)
        return info

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def swap(self, params: SwapParams, now: int | None = None) -> TradePlan:
        now = _ts(now)
        with self._atomic():
            market = self._get_market(params.market)
            plan = self._plan_swap(market, params, now)
            self._commit_trade(market, params.user, plan)
            self._trip_breaker_if_needed(market, now)
        return plan

    def sell_preview(self, user: str, market_address: str, token_type: str,
                     amount: int, now: int | None = None) -> TradePlan:
        """Exactly what `swap` would pay `user` for selling `amount` now."""
        now = _ts(now)
        params = SwapParams(market=market_address, user=user,
                            direction="sell", token_type=token_type,
                            amount=amount)
        return self._plan_swap(self._get_market(market_address), params, now)

    def _plan_swap(self, market: Market, params: SwapParams,
                   now: int) -> TradePlan:
        """Every check a swap makes, in order. Mutates nothing."""
        self._require_tradable(market)
        self._require_trading_open(market, now)
        if params.deadline is not None and now > params.deadline:
            raise ValidationError("transaction deadline exceeded",
                                  code="deadline_exceeded")
        self._validate_trade(params.direction, params.token_type,
                             params.amount)
        if params.direction == "buy":
            plan = self._plan_buy(market, params.token_type, params.amount,
                                  now)
            received = plan.tokens
        else:
            held = self.get_user_info(params.user, market.address).balance(
                params.token_type)
            if held < params.amount:
                raise InsufficientBalance(
                    f"holds {held} {params.token_type}, selling "
                    f"{params.amount}")
            plan = self._plan_sell(market, params.token_type, params.amount,
                                   now)
            received = plan.net
        if received < params.minimum_receive:
            raise ValidationError(
                f"output {received} below minimum {params.minimum_receive}",
                code="slippage_exceeded")
        self._check_swap(market, plan, now)
        return plan

    def _validate_trade(self, direction: str, token_type: str,
                        amount: int) -> None:
        if direction not in DIRECTIONS:
            raise ValidationError(f"invalid direction: {direction}",
                                  code="invalid_direction")
        if token_type not in TOKEN_TYPES:
            raise ValidationError(f"invalid token type: {token_type}",
                                  code="invalid_token_type")
        self._require_positive(amount)

    def _plan_buy(self, market: Market, token_type: str, amount: int,
                  now: int) -> TradePlan:
        self._validate_trade("buy", token_type, amount)
        if not market.seeded:
            raise MarketStateError("pool is not seeded",
                                   code="pool_not_seeded")
        b = effective_b(market.b, now, market.end_ts)
        fees = buy_fees(self.config, market, amount)
        try:
            tokens, _ = buy_quote(market.q, b, token_type, fees.net)
        except ValueError as e:
            raise ValidationError(str(e), code="amount_too_small")

        pool_c = market.pool_collateral + fees.net
        inventory = {YES: market.pool_yes, NO: market.pool_no}
        locked = market.total_collateral_locked
        if inventory[token_type] < tokens:
            need = tokens - inventory[token_type]
            if pool_c < need:
                raise LiquidityError(
                    "pool cannot cover this purchase",
                    details={"tokens": tokens})
            pool_c -= need
            inventory[YES] += need
            inventory[NO] += need
            locked += need
        inventory[token_type] -= tokens
        q_after = dict(market.q)
        q_after[token_type] += tokens
        return TradePlan(
            direction="buy", token_type=token_type, amount=amount,
            tokens=tokens, gross=amount, fees=fees, net=fees.net,
            q_after=q_after, pool_collateral_after=pool_c,
            pool_yes_after=inventory[YES], pool_no_after=inventory[NO],
            collateral_locked_after=locked,
            price_yes_after=prices(q_after, b)[YES],
        )

    def _plan_sell(self, market: Market, token_type: str, amount: int,
                   now: int) -> TradePlan:
        self._validate_trade("sell", token_type, amount)
        if not market.seeded:
            raise MarketStateError("pool is not seeded",
                                   code="pool_not_seeded")
        b = effective_b(market.b, now, market.end_ts)
        gross = sell_quote(market.q, b, token_type, amount)
        if gross <= 0:
            raise ValidationError("sell amount too small for any payout",
                                  code="amount_too_small")
        fees = sell_fees(self.config, market, gross)

        inventory = {YES: market.pool_yes, NO: market.pool_no}
        inventory[token_type] += amount
        pool_c = market.pool_collateral
        locked = market.total_collateral_locked
        if pool_c < gross:
            need = gross - pool_c
            if min(inventory.values()) < need:
                raise LiquidityError("pool cannot cover this sale",
                                     details={"payout": gross})
            inventory[YES] -= need
            inventory[NO] -= need
            locked -= need
            pool_c += need
        pool_c -= gross
        q_after = dict(market.q)
        q_after[token_type] -= amount
        return TradePlan(
            direction="sell", token_type=token_type, amount=amount,
            tokens=amount, gross=gross, fees=fees, net=fees.net,
            q_after=q_after, pool_collateral_after=pool_c,
            pool_yes_after=inventory[YES], pool_no_after=inventory[NO],
            collateral_locked_after=locked,
            price_yes_after=prices(q_after, b)[YES],
        )

    def _check_swap(self, market: Market, plan: TradePlan, now: int) -> None:
        vault_after = self.wallets.balance(market.vault)
        if plan.direction == "sell":
            vault_after -= plan.net + plan.fees.team_fee
        risk_guard.check_swap(
            self.config, market, direction=plan.direction,
            collateral_value=plan.gross, q_after=plan.q_after,
            pool_yes_after=plan.pool_yes_after,
            pool_no_after=plan.pool_no_after,
            vault_balance_after=vault_after, now=now)

    def _commit_trade(self, market: Market, user: str,
                      plan: TradePlan) -> None:
        info = self._user(market, user)
        fees = plan.fees
        reason = f"swap_{plan.direction}"
        if plan.direction == "buy":
            self.wallets.transfer(user, market.vault, plan.amount, reason,
                                  market.address)
            if plan.token_type == YES:
                info.yes_balance += plan.tokens
                info.yes_cost_basis += plan.amount
            else:
                info.no_balance += plan.tokens
                info.no_cost_basis += plan.amount
            info.collateral_in += plan.amount
        else:
            held = info.balance(plan.token_type)
            if plan.token_type == YES:
                basis = fp.mul_div(info.yes_cost_basis, plan.tokens, held)
                info.yes_balance -= plan.tokens
                info.yes_cost_basis -= basis
            else:
                basis = fp.mul_div(info.no_cost_basis, plan.tokens, held)
                info.no_balance -= plan.tokens
                info.no_cost_basis -= basis
            info.realized_pnl += plan.net - basis
            info.collateral_out += plan.net
            self.wallets.transfer(market.vault, user, plan.net, reason,
                                  market.address)

        self.wallets.transfer(market.vault, self.config.team_wallet,
                              fees.team_fee, "team_fee", market.address)
        if fees.insurance_fee:
            self.config.insurance_pool_balance += fees.insurance_fee
            market.insurance_contribution += fees.insurance_fee
        if fees.lp_fee:
            market.accumulated_lp_fees += fees.lp_fee
            market.fee_per_share_cumulative += fee_per_share_increment(
                fees.lp_fee, market.total_lp_shares)

        market.q = dict(plan.q_after)
        market.pool_collateral = plan.pool_collateral_after
        market.pool_yes = plan.pool_yes_after
        market.pool_no = plan.pool_no_after
        market.total_collateral_locked = plan.collateral_locked_after

    def _trip_breaker_if_needed(self, market: Market, now: int) -> None:
        if market.circuit_breaker_active:
            return
        reasons = risk_guard.current_trip_reasons(market, now)
        if reasons:
            market.circuit_breaker_active = True
            market.circuit_breaker_triggered_at = now
            logger.warning("circuit breaker tripped: %s reasons=%s",
                           market.address, reasons)

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    def add_liquidity(self, user: str, market_address: str, amount: int,
                      now: int | None = None) -> LPPosition:
        now = _ts(now)
        with self._atomic():
            market = self._get_market(market_address)
            self._require_tradable(market)
            self._require_trading_open(market, now)
            self._require_positive(amount)
            if not market.seeded:
                minimum = bootstrap_minimum(self.config)
                if amount < minimum:
                    raise LiquidityError(
                        f"first deposit {amount} below bootstrap minimum "
                        f"{minimum}", code="below_bootstrap_minimum",
                        details={"minimum": minimum})
                position = self._bootstrap(market, user, amount, now)
                logger.info("pool bootstrapped: %s amount=%d by %s",
                            market_address, amount, user)
                return position
            if amount < self.config.min_liquidity:
                raise LiquidityError(
                    f"deposit {amount} below minimum "
                    f"{self.config.min_liquidity}",
                    code="below_minimum_deposit")
            shares = shares_for_deposit(market, amount, now)
            if shares <= 0:
                raise LiquidityError("deposit would mint zero shares",
                                     code="zero_shares")
            self.wallets.transfer(user, market.vault, amount,
                                  "add_liquidity", market.address)
            market.pool_collateral += amount
            market.total_lp_shares += shares

            key = addresses.lp_position_address(market.address, user)
            self._touch("positions", key)
            position = self.positions.get(key)
            if position is None:
                position = LPPosition(
                    address=key, owner=user, market=market.address,
                    deposit_ts=now,
                    last_fee_per_share=market.fee_per_share_cumulative)
                self.positions[key] = position
            else:
                position.unclaimed_fees = pending_fees(position, market)
                position.last_fee_per_share = market.fee_per_share_cumulative
            position.lp_shares += shares
            position.invested_collateral += amount
        return position

    def withdraw_liquidity(self, user: str, market_address: str, shares: int,
                           min_out: int = 0,
                           now: int | None = None) -> WithdrawQuote:
        now = _ts(now)
        with self._atomic():
            self._require_live()
            market = self._get_market(market_address)
            self._require_withdrawable(market)
            position = self._get_position(market, user)
            quote = simulate_withdraw(self.config, market, position, shares,
                                      now)
            risk_guard.check_withdraw(market, quote, now)
            if quote.final_out < min_out:
                raise ValidationError(
                    f"withdrawal {quote.final_out} below minimum {min_out}",
                    code="slippage_exceeded")
            if quote.fees_out > market.accumulated_lp_fees:
                raise LiquidityError("LP fee pool cannot cover pending fees")

            market.pool_collateral = quote.pool_collateral_after
            market.pool_yes = quote.pool_yes_after
            market.pool_no = quote.pool_no_after
            market.total_collateral_locked = quote.collateral_locked_after
            market.q = dict(quote.q_after)
            market.total_lp_shares = quote.total_lp_shares_after
            market.accumulated_lp_fees -= quote.fees_out
            if quote.insurance_compensation:
                self.config.insurance_pool_balance -= \
                    quote.insurance_compensation
                market.insurance_contribution -= quote.insurance_compensation
            if not market.finalized:
                (market.withdraw_window_start,
                 market.withdraw_window_total) = risk_guard.projected_window(
                    market, quote.final_out, now)

            position.lp_shares -= shares
            position.invested_collateral -= quote.invested_share
            position.last_fee_per_share = market.fee_per_share_cumulative
            position.unclaimed_fees = 0
            if position.lp_shares == 0:
                del self.positions[position.address]

            self.wallets.transfer(market.vault, user, quote.vault_outflow,
                                  "withdraw_liquidity", market.address)
        logger.info("liquidity withdrawn: %s user=%s shares=%d out=%d "
                    "penalty=%d", market_address, user, shares,
                    quote.final_out, quote.penalty)
        return quote

    def withdraw_preview(self, user: str, market_address: str, shares: int,
                         now: int | None = None) -> WithdrawPreview:
        now = _ts(now)
        market = self._get_market(market_address)
        position = self._get_position(market, user)
        quote = simulate_withdraw(self.config, market, position, shares, now)
        ratio = risk_guard.imbalance_ratio(market.pool_yes, market.pool_no)
        reasons = ([] if market.finalized
                   else risk_guard.withdraw_trip_reasons(market, quote, now))
        return WithdrawPreview(
            quote=quote,
            imbalance_ratio=ratio,
            max_withdraw_bps=risk_guard.max_withdraw_bps(ratio),
            max_withdraw_shares=risk_guard.max_withdraw_shares(
                self.config, market, position, now),
            circuit_breaker_active=market.circuit_breaker_active,
            trip_reasons=tuple(reasons),
        )

    def reset_circuit_breaker(self, caller: str, market_address: str,
                              now: int | None = None) -> Market:
        now = _ts(now)
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            risk_guard.check_reset(market, now)
            market.circuit_breaker_active = False
            market.circuit_breaker_triggered_at = None
        logger.info("circuit breaker reset: %s", market_address)
        return market

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    def configure_market_fees(self, caller: str, market_address: str,
                              params: FeeOverrideParams) -> Market:
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            validate_override(params)
            market.fee_override = FeeOverride(
                enabled=params.enabled,
                platform_buy_fee_bps=params.platform_buy_fee_bps,
                platform_sell_fee_bps=params.platform_sell_fee_bps,
                lp_buy_fee_bps=params.lp_buy_fee_bps,
                lp_sell_fee_bps=params.lp_sell_fee_bps,
            )
        return market

    def claim_fees_preview(self, user: str, market_address: str) -> FeeClaimQuote:
        market = self._get_market(market_address)
        position = self._get_position(market, user)
        amount = pending_fees(position, market)
        vault_after = self.wallets.balance(market.vault) - amount
        reason = None
        if amount <= 0:
            reason = "no fees to claim"
        elif amount > market.accumulated_lp_fees:
            reason = "LP fee pool cannot cover pending fees"
        elif vault_after < self.config.vault_min_balance:
            reason = "projected vault balance below minimum"
        return FeeClaimQuote(amount=amount, vault_balance_after=vault_after,
                             claimable=reason is None, reason=reason)

    def claim_fees(self, user: str, market_address: str) -> int:
        with self._atomic():
            self._require_live()
            quote = self.claim_fees_preview(user, market_address)
            if quote.amount <= 0:
                raise LiquidityError("no fees to claim", code="no_fees")
            if quote.amount > self._get_market(market_address).accumulated_lp_fees:
                raise LiquidityError(quote.reason)
            if not quote.claimable:
                logger.warning("fee claim rejected: %s user=%s reason=%s",
                               market_address, user, quote.reason)
                raise RiskGuardError(quote.reason, code="vault_min_balance",
                                     details={"vault_balance_after":
                                              quote.vault_balance_after})
            market = self._get_market(market_address)
            position = self._get_position(market, user)
            market.accumulated_lp_fees -= quote.amount
            position.unclaimed_fees = 0
            position.last_fee_per_share = market.fee_per_share_cumulative
            self.wallets.transfer(market.vault, user, quote.amount,
                                  "claim_fees", market.address)
        return quote.amount

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def claim_rewards_preview(self, user: str,
                              market_address: str) -> RewardsQuote:
        """What `claim_rewards` would pay `user`, or why it would refuse."""
        market = self._get_market(market_address)
        info = self.get_user_info(user, market.address)
        payout, reason = 0, None
        if self.config.paused:
            reason = "protocol_paused"
        elif not market.finalized:
            reason = "not_finalized"
        elif info.yes_balance == 0 and info.no_balance == 0:
            reason = "nothing_to_claim"
        else:
            payout = self._settlement_value(market, info.yes_balance,
                                            info.no_balance)
        return RewardsQuote(
            yes_balance=info.yes_balance, no_balance=info.no_balance,
            payout=payout,
            vault_balance_after=self.wallets.balance(market.vault) - payout,
            claimable=reason is None, reason=reason)

    def claim_rewards(self, user: str, market_address: str) -> int:
        """Pay out a user's tokens at the final outcome. Burns both sides."""
        with self._atomic():
            quote = self.claim_rewards_preview(user, market_address)
            if quote.reason == "protocol_paused":
                self._require_live()
            if quote.reason == "not_finalized":
                raise MarketStateError(
                    f"market {market_address} is not finalized",
                    code="not_finalized")
            if quote.reason == "nothing_to_claim":
                raise LiquidityError("nothing to claim",
                                     code="nothing_to_claim")
            market = self._get_market(market_address)
            info = self._user(market, user)
            payout = quote.payout
            info.realized_pnl += payout - info.yes_cost_basis - info.no_cost_basis
            info.yes_balance = info.no_balance = 0
            info.yes_cost_basis = info.no_cost_basis = 0
            info.collateral_out += payout
            market.total_collateral_locked -= payout
            self.wallets.transfer(market.vault, user, payout,
                                  "claim_rewards", market.address)
        return payout

    def reclaim_dust(self, caller: str, market_address: str) -> int:
        """
        Sweep what is left in a finished market's books to the team
        wallet: rounding residue of invalid-outcome payouts and LP fees,
        plus the value behind the permanently locked LP shares. Only once
        every LP has exited and every holder has claimed. The market's
        insurance contribution stays put.
        """
        with self._atomic():
            self._require_admin(caller)
            market = self._get_market(market_address)
            if not market.finalized:
                raise MarketStateError(
                    f"market {market_address} is not finalized",
                    code="not_finalized")
            if any(p.market == market.address
                   for p in self.positions.values()):
                raise LiquidityError("LP shares are still outstanding",
                                     code="lp_shares_outstanding")
            if any(u.market == market.address
                   and (u.yes_balance or u.no_balance)
                   for u in self.users.values()):
                raise MarketStateError("rewards are still unclaimed",
                                       code="rewards_unclaimed")
            dust = (market.pool_collateral + market.total_collateral_locked
                    + market.accumulated_lp_fees)
            if dust <= 0:
                raise LiquidityError("nothing to reclaim",
                                     code="nothing_to_reclaim")
            market.pool_collateral = 0
            market.total_collateral_locked = 0
            market.accumulated_lp_fees = 0
            self.wallets.transfer(market.vault, self.config.team_wallet, dust,
                                  "reclaim_dust", market.address)
        logger.info("dust reclaimed: %s amount=%d", market_address, dust)
        return dust

    @staticmethod
    def _settlement_value(market: Market, yes: int, no: int) -> int:
        if market.outcome == YES:
            return yes
        if market.outcome == NO:
            return no
        if market.outcome == OUTCOME_INVALID:
            return (yes + no) // 2
        raise MarketStateError("market outcome is unset")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_market(self, market_address: str) -> Market:
        return self._get_market(market_address)

    def get_position(self, user: str, market_address: str) -> LPPosition:
        return self._get_position(self._get_market(market_address), user)

    def get_user_info(self, user: str, market_address: str) -> UserInfo:
        market = self._get_market(market_address)
        key = addresses.userinfo_address(market.address, user)
        return self.users.get(key) or UserInfo(address=key, owner=user,
                                               market=market.address)

    def market_prices(self, market_address: str,
                      now: int | None = None) -> dict[str, Decimal]:
        market = self._get_market(market_address)
        return prices(market.q, effective_b(market.b, _ts(now), market.end_ts))

    def pool_value(self, market_address: str, now: int | None = None) -> int:
        return pool_value(self._get_market(market_address), _ts(now))

    def vault_obligations(self, market: Market) -> int:
        return (market.pool_collateral + market.total_collateral_locked
                + market.accumulated_lp_fees + market.insurance_contribution)

    def check_vault_invariant(self, market_address: str) -> bool:
        market = self._get_market(market_address)
        return self.wallets.balance(market.vault) == self.vault_obligations(market)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _bootstrap(self, market: Market, owner: str, amount: int,
                   now: int) -> LPPosition:
        """
        First liquidity: the deposit becomes `amount` complete sets held by
        the pool. MINIMUM_LIQUIDITY shares are locked forever.
        """
        self.wallets.transfer(owner, market.vault, amount, "seed_pool",
                              market.address)
        market.pool_yes += amount
        market.pool_no += amount
        market.total_collateral_locked += amount
        market.initial_yes_reserve = market.pool_yes
        market.initial_no_reserve = market.pool_no
        market.total_lp_shares = amount
        market.locked_lp_shares = MINIMUM_LIQUIDITY

        key = addresses.lp_position_address(market.address, owner)
        self._touch("positions", key)
        position = LPPosition(
            address=key, owner=owner, market=market.address,
            lp_shares=amount - MINIMUM_LIQUIDITY,
            invested_collateral=amount, deposit_ts=now,
            last_fee_per_share=market.fee_per_share_cumulative)
        self.positions[key] = position
        return position

    def _user(self, market: Market, owner: str) -> UserInfo:
        key = addresses.userinfo_address(market.address, owner)
        self._touch("users", key)
        info = self.users.get(key)
        if info is None:
            info = UserInfo(address=key, owner=owner, market=market.address)
            self.users[key] = info
        return info

    def _get_market(self, market_address: str) -> Market:
        self._touch("markets", market_address)
        market = self.markets.get(market_address)
        if market is None:
            raise NotFoundError(f"market {market_address} not found")
        return market

    def _get_position(self, market: Market, owner: str) -> LPPosition:
        key = addresses.lp_position_address(market.address, owner)
        self._touch("positions", key)
        position = self.positions.get(key)
        if position is None:
            raise NotFoundError(
                f"no LP position for {owner} in market {market.address}")
        return position

    def _require_admin(self, caller: str) -> None:
        if not self.config.initialized or caller != self.config.admin:
            raise AuthorizationError("admin only")

    def _require_initialized(self) -> None:
        if not self.config.initialized:
            raise MarketStateError("engine is not configured",
                                   code="not_initialized")

    def _require_live(self) -> None:
        if self.config.paused:
            raise MarketStateError("protocol is paused",
                                   code="protocol_paused")

    def _require_tradable(self, market: Market) -> None:
        """Open for seeding, minting, swaps and deposits."""
        self._require_live()
        if market.status == MARKET_PAUSED:
            raise MarketStateError(f"market {market.address} is paused",
                                   code="market_paused")
        if market.status != MARKET_ACTIVE:
            raise MarketStateError(f"market {market.address} is "
                                   f"{market.status}")

    def _require_trading_open(self, market: Market, now: int) -> None:
        """Swaps and new liquidity stop at end_ts."""
        if market.end_ts is not None and now >= market.end_ts:
            raise MarketStateError(f"market {market.address} has expired",
                                   code="market_expired")

    def _require_withdrawable(self, market: Market) -> None:
        if market.status == MARKET_RESOLVED and not market.finalized:
            raise MarketStateError(
                "withdrawals are closed until the market is finalized",
                code="awaiting_finalization")

    @staticmethod
    def _require_positive(amount: int) -> None:
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer")
