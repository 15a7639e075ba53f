"""
FastAPI application. HTTP API for the binary prediction-market engine.

Public endpoints (no auth): health, config, markets, market detail,
resolution, dispute.
User endpoints (API key): wallet, key rotation, create market, seed,
complete sets, swap, sell preview, liquidity, fee claims, rewards and
their previews, disputes, accepting an admin nomination.
Admin endpoints (admin key): configure, admin nomination, whitelist, pause,
deposit, market pause, fee overrides, breaker reset, resolve, finalize,
dust reclaim, dispute listing and manual review, audit log.

Money travels as decimal strings with at most 6 dp.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI

from predmarket import fixed_point as fp
from predmarket.api_errors import APIError, api_error_handler, translate_engine_error
from predmarket.api_models import (
    RegisterRequest, RegisterResponse, WalletResponse,
    ConfigureRequest, ConfigResponse, WhitelistRequest, PauseRequest,
    DepositRequest, FeeOverrideRequest, NominateAdminRequest,
    CreateMarketRequest, MarketSummary, MarketDetail,
    AmountRequest, SwapRequest, TradeResponse, UserInfoResponse,
    PositionResponse, WithdrawRequest, WithdrawResponse,
    WithdrawPreviewResponse, FeeClaimPreview, RewardsPreview, ClaimResponse,
    ResolveRequest, OracleResolveRequest, ResolutionResponse,
    DisputeRequest, DisputeResponse, ManualReviewRequest, AuditEntry,
    HealthResponse,
)
from predmarket.auth import AuthStore
from predmarket.dispute_queue import DisputeQueue, start_consumers
from predmarket.disputes import DisputeReviewer
from predmarket.errors import EngineError, ReviewError
from predmarket.evaluation import EvaluationClient
from predmarket.evidence import EvidenceFetcher
from predmarket.fees import pending_fees
from predmarket.market_engine import MarketEngine
from predmarket.middleware import AuthUser, AdminDep
from predmarket.models import (
    Condition, ConfigParams, CreateMarketParams, DISPUTE_PENDING,
    DISPUTE_REVIEWING, EvidenceSource, FeeOverrideParams, MachineLogic,
    Market, ResolutionCriteria, SwapParams,
)
from predmarket.persistence import load_snapshot, save_snapshot
from predmarket.resolution import (
    RESOLUTION_FINALIZED, ResolutionBook, ResolutionOracle,
)

logger = logging.getLogger(__name__)


STATE_PATH = os.environ.get("PREDMARKET_STATE", "./predmarket_state.json")
EVALUATOR_URL = os.environ.get("PREDMARKET_EVALUATOR_URL", "")
EVALUATOR_TIMEOUT = float(os.environ.get("PREDMARKET_EVALUATOR_TIMEOUT", "60"))
EVIDENCE_TIMEOUT = float(os.environ.get("PREDMARKET_EVIDENCE_TIMEOUT", "30"))
DISPUTE_CONSUMERS = int(os.environ.get("PREDMARKET_DISPUTE_CONSUMERS", "2"))


def _wire(state) -> None:
    """Build the off-ledger services around the loaded engine and book."""
    state.fetcher = EvidenceFetcher(timeout=EVIDENCE_TIMEOUT)
    state.evaluator = (EvaluationClient(EVALUATOR_URL, timeout=EVALUATOR_TIMEOUT)
                       if EVALUATOR_URL else None)
    state.queue = DisputeQueue(on_dead_letter=_dead_letter)
    state.reviewer = DisputeReviewer(
        state.book, state.fetcher, state.evaluator,
        on_overturn=lambda market, outcome: state.engine.override_outcome(
            market, outcome),
        clock=lambda: state.clock())


@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.path.exists(STATE_PATH):
        engine, book, auth_store = load_snapshot(STATE_PATH)
    else:
        engine, book, auth_store = MarketEngine(), ResolutionBook(), AuthStore()

    app.state.engine = engine
    app.state.book = book
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    app.state.clock = time.time
    _wire(app.state)

    # Leases of the previous run died with it
    pending = app.state.reviewer.recover_leases()
    if pending:
        _save()

    consumers = []
    if app.state.evaluator is not None:
        consumers = start_consumers(app.state.queue, _review,
                                    DISPUTE_CONSUMERS)
        for d in pending:
            await app.state.queue.publish({"dispute_id": d.id})
    else:
        logger.warning("PREDMARKET_EVALUATOR_URL not set; disputes wait "
                       "for manual review")
    yield
    for task in consumers:
        task.cancel()
    await asyncio.gather(*consumers, return_exceptions=True)
    await app.state.queue.close()


app = FastAPI(title="Prediction Market API", version="0.1.0",
              lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.engine, STATE_PATH, book=app.state.book,
                  auth_store=app.state.auth_store)


async def _review(envelope: dict, consumer: str):
    """Queue handler: review one dispute, then persist whatever changed."""
    try:
        return await app.state.reviewer.process(envelope, consumer)
    finally:
        async with app.state.lock:
            _save()


async def _dead_letter(envelope: dict, error: BaseException) -> None:
    """Deliveries exhausted: escalate so finalization is not blocked."""
    async with app.state.lock:
        app.state.reviewer.escalate_undeliverable(envelope["dispute_id"],
                                                  str(error))
        _save()


def _now() -> int:
    return int(app.state.clock())


def _admin() -> str:
    return app.state.engine.config.admin


def _amount(value: str, name: str = "amount") -> int:
    try:
        return fp.to_fixed(value)
    except ValueError as e:
        raise APIError(400, "invalid_amount", f"Invalid {name}: {value}",
                       {"reason": str(e)})


def _fmt(units: int) -> str:
    return f"{fp.from_fixed(units).normalize():f}"


def _market_or_404(address: str) -> Market:
    try:
        return app.state.engine.get_market(address)
    except EngineError as e:
        raise translate_engine_error(e)


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def _summary_fields(m: Market, now: int) -> dict:
    engine = app.state.engine
    p = engine.market_prices(m.address, now)
    return dict(
        address=m.address,
        question=m.question,
        slug=m.slug,
        creator=m.creator,
        status=m.status,
        outcome=m.outcome,
        finalized=m.finalized,
        prices={k: str(v) for k, v in p.items()},
        b=_fmt(m.b),
        pool_value=_fmt(engine.pool_value(m.address, now)),
        total_lp_shares=_fmt(m.total_lp_shares),
        circuit_breaker_active=m.circuit_breaker_active,
        end_ts=m.end_ts,
    )


def _detail(m: Market, now: int) -> MarketDetail:
    return MarketDetail(
        **_summary_fields(m, now),
        yes_token=m.yes_token,
        no_token=m.no_token,
        vault=m.vault,
        q={k: _fmt(v) for k, v in m.q.items()},
        pool_collateral=_fmt(m.pool_collateral),
        pool_yes=_fmt(m.pool_yes),
        pool_no=_fmt(m.pool_no),
        total_collateral_locked=_fmt(m.total_collateral_locked),
        accumulated_lp_fees=_fmt(m.accumulated_lp_fees),
        insurance_contribution=_fmt(m.insurance_contribution),
        fee_override=asdict(m.fee_override),
        created_ts=m.created_ts,
        resolved_ts=m.resolved_ts,
    )


def _config_response() -> ConfigResponse:
    c = app.state.engine.config
    return ConfigResponse(
        admin=c.admin,
        pending_admin=c.pending_admin,
        team_wallet=c.team_wallet,
        collateral_mint=c.collateral_mint,
        platform_buy_fee_bps=c.platform_buy_fee_bps,
        platform_sell_fee_bps=c.platform_sell_fee_bps,
        lp_buy_fee_bps=c.lp_buy_fee_bps,
        lp_sell_fee_bps=c.lp_sell_fee_bps,
        whitelist_enabled=c.whitelist_enabled,
        whitelist=list(c.whitelist),
        insurance_enabled=c.insurance_enabled,
        insurance_pool_balance=_fmt(c.insurance_pool_balance),
        vault_min_balance=_fmt(c.vault_min_balance),
        min_liquidity=_fmt(c.min_liquidity),
        dispute_window_seconds=c.dispute_window_seconds,
        paused=c.paused,
        initialized=c.initialized,
    )


def _trade_response(plan) -> TradeResponse:
    return TradeResponse(
        direction=plan.direction,
        token_type=plan.token_type,
        amount_in=_fmt(plan.amount),
        amount_out=_fmt(plan.amount_out),
        platform_fee=_fmt(plan.fees.platform_fee),
        lp_fee=_fmt(plan.fees.lp_fee),
        price_yes_after=str(plan.price_yes_after),
    )


def _user_info_response(info) -> UserInfoResponse:
    return UserInfoResponse(
        market=info.market,
        owner=info.owner,
        yes_balance=_fmt(info.yes_balance),
        no_balance=_fmt(info.no_balance),
        yes_cost_basis=_fmt(info.yes_cost_basis),
        no_cost_basis=_fmt(info.no_cost_basis),
        realized_pnl=_fmt(info.realized_pnl),
        collateral_in=_fmt(info.collateral_in),
        collateral_out=_fmt(info.collateral_out),
    )


def _withdraw_fields(quote) -> dict:
    return dict(
        shares=_fmt(quote.shares),
        gross=_fmt(quote.gross),
        holding_seconds=quote.holding_seconds,
        penalty_bps=quote.penalty_bps,
        penalty=_fmt(quote.penalty),
        internal_slippage_bps=quote.internal_slippage_bps,
        insurance_compensation=_fmt(quote.insurance_compensation),
        final_out=_fmt(quote.final_out),
        fees_out=_fmt(quote.fees_out),
    )


def _resolution_response(r) -> ResolutionResponse:
    return ResolutionResponse(
        id=r.id,
        market=r.market,
        question=r.question,
        final_result=r.final_result,
        reasoning=r.reasoning,
        status=r.status,
        evidence_hash=r.evidence_hash,
        evidence_sources=r.evidence_sources,
        must_meet_all_results=[asdict(x) for x in r.must_meet_all_results],
        must_not_count_results=[asdict(x) for x in r.must_not_count_results],
        resolved_at=r.resolved_at,
        dispute_window_ends=r.dispute_window_ends,
    )


def _dispute_response(d) -> DisputeResponse:
    return DisputeResponse(
        id=d.id,
        resolution_id=d.resolution_id,
        user=d.user,
        reason=d.reason,
        evidence_urls=d.evidence_urls,
        status=d.status,
        new_result=d.new_result,
        created_at=d.created_at,
        resolved_at=d.resolved_at,
        admin_review=d.admin_review,
    )


# ---------------------------------------------------------------------------
# Health + public data
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    pending = sum(1 for d in app.state.book.disputes.values()
                  if d.status in (DISPUTE_PENDING, DISPUTE_REVIEWING))
    return HealthResponse(
        status="ok",
        markets=len(app.state.engine.markets),
        wallets=len(app.state.engine.wallets.accounts),
        pending_disputes=pending,
    )


@app.get("/v1/config")
async def get_config() -> ConfigResponse:
    return _config_response()


@app.get("/v1/markets")
async def list_markets(status: str | None = None,
                       creator: str | None = None) -> list[MarketSummary]:
    """List markets with current prices. Optional exact-match filters."""
    now = _now()
    result = []
    for m in app.state.engine.markets.values():
        if status is not None and m.status != status:
            continue
        if creator is not None and m.creator != creator:
            continue
        result.append(MarketSummary(**_summary_fields(m, now)))
    return result


@app.get("/v1/markets/{address}")
async def get_market(address: str) -> MarketDetail:
    return _detail(_market_or_404(address), _now())


@app.get("/v1/markets/{address}/resolution")
async def get_market_resolution(address: str) -> ResolutionResponse:
    _market_or_404(address)
    res = app.state.book.resolution_for_market(address)
    if res is None:
        raise APIError(404, "not_found",
                       f"Market {address} has no oracle resolution")
    return _resolution_response(res)


@app.get("/v1/disputes/{dispute_id}")
async def get_dispute(dispute_id: int) -> DisputeResponse:
    try:
        return _dispute_response(app.state.book.get_dispute(dispute_id))
    except EngineError as e:
        raise translate_engine_error(e)


# ---------------------------------------------------------------------------
# Auth (no API key required)
# ---------------------------------------------------------------------------

@app.post("/v1/auth/register")
async def auth_register(req: RegisterRequest) -> RegisterResponse:
    """Register a username. Returns the API key once and the wallet address."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")

    async with app.state.lock:
        try:
            user, raw_key = app.state.auth_store.register_user(username)
        except ValueError as e:
            if str(e) == "username_taken":
                raise APIError(409, "username_taken",
                               f"Username '{username}' is already taken")
            raise
        _save()

    return RegisterResponse(api_key=raw_key, username=user.username,
                            wallet=user.wallet)


# ---------------------------------------------------------------------------
# User endpoints (API key required)
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(user: AuthUser) -> WalletResponse:
    return WalletResponse(
        wallet=user.wallet,
        balance=_fmt(app.state.engine.wallets.balance(user.wallet)))


@app.post("/v1/me/rotate-key")
async def rotate_key(user: AuthUser) -> RegisterResponse:
    """Issue a fresh API key. The presented key stops working immediately."""
    async with app.state.lock:
        user, raw_key = app.state.auth_store.rotate_key(user.username)
        _save()
    return RegisterResponse(api_key=raw_key, username=user.username,
                            wallet=user.wallet)


@app.post("/v1/me/accept-admin")
async def accept_admin(user: AuthUser) -> ConfigResponse:
    """Complete an admin handover nominated to the caller's wallet."""
    async with app.state.lock:
        try:
            app.state.engine.accept_admin(user.wallet)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _config_response()


@app.post("/v1/markets")
async def create_market(req: CreateMarketRequest,
                        user: AuthUser) -> MarketDetail:
    """Create a market. The caller's wallet becomes the creator."""
    b = _amount(req.b, "b")
    async with app.state.lock:
        now = _now()
        try:
            market = app.state.engine.create_market(CreateMarketParams(
                creator=user.wallet,
                question=req.question,
                slug=req.slug,
                b=b,
                end_ts=req.end_ts,
                initial_probability_bps=req.initial_probability_bps,
            ), now)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _detail(market, now)


@app.post("/v1/markets/{address}/seed")
async def seed_pool(address: str, req: AmountRequest,
                    user: AuthUser) -> PositionResponse:
    amount = _amount(req.amount)
    async with app.state.lock:
        try:
            position = app.state.engine.seed_pool(user.wallet, address,
                                                  amount, _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _position_response(position)


@app.post("/v1/markets/{address}/mint")
async def mint(address: str, req: AmountRequest,
               user: AuthUser) -> UserInfoResponse:
    """Lock collateral and receive an equal amount of YES and NO."""
    amount = _amount(req.amount)
    async with app.state.lock:
        try:
            info = app.state.engine.mint_complete_set(user.wallet, address,
                                                      amount, _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _user_info_response(info)


@app.post("/v1/markets/{address}/redeem")
async def redeem(address: str, req: AmountRequest,
                 user: AuthUser) -> UserInfoResponse:
    """Burn equal YES and NO and get the collateral back."""
    amount = _amount(req.amount)
    async with app.state.lock:
        try:
            info = app.state.engine.redeem_complete_set(user.wallet, address,
                                                        amount, _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _user_info_response(info)


@app.post("/v1/markets/{address}/swap")
async def swap(address: str, req: SwapRequest,
               user: AuthUser) -> TradeResponse:
    amount = _amount(req.amount)
    minimum = _amount(req.minimum_receive, "minimum_receive")
    async with app.state.lock:
        try:
            plan = app.state.engine.swap(SwapParams(
                market=address,
                user=user.wallet,
                direction=req.direction,
                token_type=req.token_type,
                amount=amount,
                minimum_receive=minimum,
                deadline=req.deadline,
            ), _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _trade_response(plan)


@app.get("/v1/markets/{address}/sell-preview")
async def sell_preview(address: str, token_type: str, amount: str,
                       user: AuthUser) -> TradeResponse:
    """What selling `amount` of the caller's tokens would pay right now."""
    units = _amount(amount)
    try:
        plan = app.state.engine.sell_preview(user.wallet, address,
                                             token_type, units, _now())
    except EngineError as e:
        raise translate_engine_error(e)
    return _trade_response(plan)


@app.get("/v1/markets/{address}/me")
async def get_my_market_info(address: str,
                             user: AuthUser) -> UserInfoResponse:
    try:
        info = app.state.engine.get_user_info(user.wallet, address)
    except EngineError as e:
        raise translate_engine_error(e)
    return _user_info_response(info)


def _position_response(position) -> PositionResponse:
    market = app.state.engine.get_market(position.market)
    return PositionResponse(
        market=position.market,
        owner=position.owner,
        lp_shares=_fmt(position.lp_shares),
        invested_collateral=_fmt(position.invested_collateral),
        deposit_ts=position.deposit_ts,
        pending_fees=_fmt(pending_fees(position, market)),
    )


@app.post("/v1/markets/{address}/liquidity")
async def add_liquidity(address: str, req: AmountRequest,
                        user: AuthUser) -> PositionResponse:
    """Deposit collateral. The first deposit into an empty pool bootstraps it."""
    amount = _amount(req.amount)
    async with app.state.lock:
        try:
            position = app.state.engine.add_liquidity(user.wallet, address,
                                                      amount, _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _position_response(position)


@app.get("/v1/markets/{address}/liquidity/me")
async def get_my_position(address: str, user: AuthUser) -> PositionResponse:
    try:
        position = app.state.engine.get_position(user.wallet, address)
    except EngineError as e:
        raise translate_engine_error(e)
    return _position_response(position)


@app.post("/v1/markets/{address}/liquidity/withdraw")
async def withdraw_liquidity(address: str, req: WithdrawRequest,
                             user: AuthUser) -> WithdrawResponse:
    shares = _amount(req.shares, "shares")
    min_out = _amount(req.min_out, "min_out")
    async with app.state.lock:
        try:
            quote = app.state.engine.withdraw_liquidity(
                user.wallet, address, shares, min_out, _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return WithdrawResponse(**_withdraw_fields(quote))


@app.get("/v1/markets/{address}/liquidity/withdraw-preview")
async def withdraw_preview(address: str, shares: str,
                           user: AuthUser) -> WithdrawPreviewResponse:
    """Full withdrawal quote plus the largest withdrawal the breaker allows."""
    units = _amount(shares, "shares")
    try:
        preview = app.state.engine.withdraw_preview(user.wallet, address,
                                                    units, _now())
    except EngineError as e:
        raise translate_engine_error(e)
    return WithdrawPreviewResponse(
        **_withdraw_fields(preview.quote),
        imbalance_ratio=preview.imbalance_ratio,
        max_withdraw_bps=preview.max_withdraw_bps,
        max_withdraw_shares=_fmt(preview.max_withdraw_shares),
        circuit_breaker_active=preview.circuit_breaker_active,
        trip_reasons=list(preview.trip_reasons),
    )


@app.get("/v1/markets/{address}/fees/preview")
async def claim_fees_preview(address: str, user: AuthUser) -> FeeClaimPreview:
    try:
        quote = app.state.engine.claim_fees_preview(user.wallet, address)
    except EngineError as e:
        raise translate_engine_error(e)
    return FeeClaimPreview(
        amount=_fmt(quote.amount),
        vault_balance_after=_fmt(quote.vault_balance_after),
        claimable=quote.claimable,
        reason=quote.reason,
    )


@app.post("/v1/markets/{address}/fees/claim")
async def claim_fees(address: str, user: AuthUser) -> ClaimResponse:
    async with app.state.lock:
        try:
            amount = app.state.engine.claim_fees(user.wallet, address)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return ClaimResponse(amount=_fmt(amount))


@app.get("/v1/markets/{address}/claim/preview")
async def claim_rewards_preview(address: str, user: AuthUser) -> RewardsPreview:
    try:
        quote = app.state.engine.claim_rewards_preview(user.wallet, address)
    except EngineError as e:
        raise translate_engine_error(e)
    return RewardsPreview(
        yes_balance=_fmt(quote.yes_balance),
        no_balance=_fmt(quote.no_balance),
        payout=_fmt(quote.payout),
        vault_balance_after=_fmt(quote.vault_balance_after),
        claimable=quote.claimable,
        reason=quote.reason,
    )


@app.post("/v1/markets/{address}/claim")
async def claim_rewards(address: str, user: AuthUser) -> ClaimResponse:
    """Pay out the caller's tokens at the final outcome."""
    async with app.state.lock:
        try:
            amount = app.state.engine.claim_rewards(user.wallet, address)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return ClaimResponse(amount=_fmt(amount))


@app.post("/v1/resolutions/{resolution_id}/disputes")
async def file_dispute(resolution_id: int, req: DisputeRequest,
                       user: AuthUser) -> DisputeResponse:
    """Challenge an oracle resolution. Review happens asynchronously."""
    async with app.state.lock:
        try:
            dispute = app.state.reviewer.file_dispute(
                resolution_id, user.wallet, req.reason, req.evidence_urls,
                _now())
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    await app.state.queue.publish({"dispute_id": dispute.id})
    return _dispute_response(dispute)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/configure")
async def admin_configure(req: ConfigureRequest, _: AdminDep) -> ConfigResponse:
    """Initialize the engine, or replace its configuration."""
    params = ConfigParams(
        admin=req.admin,
        team_wallet=req.team_wallet,
        collateral_mint=req.collateral_mint,
        platform_buy_fee_bps=req.platform_buy_fee_bps,
        platform_sell_fee_bps=req.platform_sell_fee_bps,
        lp_buy_fee_bps=req.lp_buy_fee_bps,
        lp_sell_fee_bps=req.lp_sell_fee_bps,
        whitelist_enabled=req.whitelist_enabled,
        insurance_enabled=req.insurance_enabled,
        lp_insurance_allocation_bps=req.lp_insurance_allocation_bps,
        insurance_loss_threshold_bps=req.insurance_loss_threshold_bps,
        insurance_max_compensation_bps=req.insurance_max_compensation_bps,
        vault_min_balance=_amount(req.vault_min_balance, "vault_min_balance"),
        min_liquidity=_amount(req.min_liquidity, "min_liquidity"),
        dispute_window_seconds=req.dispute_window_seconds,
        paused=req.paused,
    )
    async with app.state.lock:
        try:
            app.state.engine.configure(_admin(), params)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _config_response()


@app.post("/v1/admin/nominate-admin")
async def admin_nominate(req: NominateAdminRequest,
                         _: AdminDep) -> ConfigResponse:
    async with app.state.lock:
        try:
            app.state.engine.nominate_admin(_admin(), req.nominee)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _config_response()


@app.post("/v1/admin/whitelist")
async def admin_whitelist(req: WhitelistRequest, _: AdminDep) -> ConfigResponse:
    async with app.state.lock:
        try:
            app.state.engine.set_whitelist(_admin(), req.creators, req.enabled)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _config_response()


@app.post("/v1/admin/pause")
async def admin_pause(req: PauseRequest, _: AdminDep) -> ConfigResponse:
    """Global emergency stop."""
    async with app.state.lock:
        try:
            app.state.engine.set_paused(_admin(), req.paused)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _config_response()


@app.post("/v1/admin/deposit")
async def admin_deposit(req: DepositRequest, _: AdminDep) -> WalletResponse:
    """Credit collateral to a wallet from outside the system."""
    amount = _amount(req.amount)
    async with app.state.lock:
        try:
            app.state.engine.wallets.deposit(req.wallet, amount)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return WalletResponse(
        wallet=req.wallet,
        balance=_fmt(app.state.engine.wallets.balance(req.wallet)))


@app.post("/v1/admin/markets/{address}/pause")
async def admin_pause_market(address: str, _: AdminDep) -> MarketDetail:
    async with app.state.lock:
        try:
            market = app.state.engine.pause_market(_admin(), address)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _detail(market, _now())


@app.post("/v1/admin/markets/{address}/unpause")
async def admin_unpause_market(address: str, _: AdminDep) -> MarketDetail:
    async with app.state.lock:
        try:
            market = app.state.engine.unpause_market(_admin(), address)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _detail(market, _now())


@app.post("/v1/admin/markets/{address}/fees")
async def admin_market_fees(address: str, req: FeeOverrideRequest,
                            _: AdminDep) -> MarketDetail:
    async with app.state.lock:
        try:
            market = app.state.engine.configure_market_fees(
                _admin(), address, FeeOverrideParams(
                    enabled=req.enabled,
                    platform_buy_fee_bps=req.platform_buy_fee_bps,
                    platform_sell_fee_bps=req.platform_sell_fee_bps,
                    lp_buy_fee_bps=req.lp_buy_fee_bps,
                    lp_sell_fee_bps=req.lp_sell_fee_bps,
                ))
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _detail(market, _now())


@app.post("/v1/admin/markets/{address}/reset-breaker")
async def admin_reset_breaker(address: str, _: AdminDep) -> MarketDetail:
    async with app.state.lock:
        now = _now()
        try:
            market = app.state.engine.reset_circuit_breaker(_admin(), address,
                                                            now)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _detail(market, now)


@app.post("/v1/admin/markets/{address}/resolve")
async def admin_resolve(address: str, req: OracleResolveRequest,
                        _: AdminDep) -> ResolutionResponse:
    """
    Resolve through the oracle: fetch the allow-listed sources, evaluate the
    criteria literally and record the outcome. Opens the dispute window.
    """
    market = _market_or_404(address)
    c = req.criteria
    criteria = ResolutionCriteria(
        must_meet_all=[Condition(**x.model_dump()) for x in c.must_meet_all],
        must_not_count=[Condition(**x.model_dump()) for x in c.must_not_count],
        allowed_sources=[EvidenceSource(**s.model_dump())
                         for s in c.allowed_sources],
        logic=MachineLogic(**c.logic.model_dump()),
    )
    oracle = ResolutionOracle(app.state.book, app.state.fetcher,
                              app.state.engine.config.dispute_window_seconds)
    now = _now()
    try:
        resolution = await oracle.resolve(market.address, market.question,
                                          criteria, now, actor="admin")
    except (EngineError, ReviewError) as e:
        async with app.state.lock:
            _save()
        raise translate_engine_error(e)

    async with app.state.lock:
        try:
            app.state.engine.resolve_market(
                _admin(), address, resolution.final_result.lower(), now)
        except EngineError as e:
            raise translate_engine_error(e)
        app.state.book.record_resolution(resolution)
        _save()
    return _resolution_response(resolution)


@app.post("/v1/admin/markets/{address}/resolve-manual")
async def admin_resolve_manual(address: str, req: ResolveRequest,
                               _: AdminDep) -> MarketDetail:
    """Resolve without the oracle, e.g. to void a market as invalid."""
    async with app.state.lock:
        now = _now()
        try:
            market = app.state.engine.resolve_market(_admin(), address,
                                                     req.outcome, now)
        except EngineError as e:
            raise translate_engine_error(e)
        app.state.book.audit("manual_resolution", "market", address, "admin",
                             {"outcome": req.outcome})
        _save()
    return _detail(market, now)


@app.post("/v1/admin/markets/{address}/finalize")
async def admin_finalize(address: str, _: AdminDep) -> MarketDetail:
    """Close the dispute window and settle the pool's inventory."""
    book = app.state.book
    async with app.state.lock:
        now = _now()
        resolution = book.resolution_for_market(address)
        if resolution is not None and book.active_disputes(resolution.id):
            raise APIError(409, "dispute_active",
                           "Resolution has a dispute under review")
        try:
            market = app.state.engine.finalize_market(_admin(), address, now)
        except EngineError as e:
            raise translate_engine_error(e)
        if resolution is not None:
            resolution.status = RESOLUTION_FINALIZED
            book.audit("resolution_finalized", "resolution",
                       str(resolution.id), "admin",
                       {"market": address,
                        "final_result": resolution.final_result})
        _save()
    return _detail(market, now)


@app.post("/v1/admin/markets/{address}/reclaim-dust")
async def admin_reclaim_dust(address: str, _: AdminDep) -> ClaimResponse:
    """Sweep a settled market's leftover balance to the team wallet."""
    async with app.state.lock:
        try:
            amount = app.state.engine.reclaim_dust(_admin(), address)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return ClaimResponse(amount=_fmt(amount))


@app.get("/v1/admin/disputes")
async def admin_list_disputes(_: AdminDep,
                              status: str | None = None) -> list[DisputeResponse]:
    return [_dispute_response(d)
            for d in app.state.book.list_disputes(status)]


@app.post("/v1/admin/disputes/{dispute_id}/review")
async def admin_review_dispute(dispute_id: int, req: ManualReviewRequest,
                               _: AdminDep) -> DisputeResponse:
    """Settle a pending, reviewing or escalated dispute by hand."""
    async with app.state.lock:
        try:
            dispute = app.state.reviewer.review_manually(
                dispute_id, req.decision, _admin(), req.reason,
                req.new_result)
            _save()
        except EngineError as e:
            raise translate_engine_error(e)
    return _dispute_response(dispute)


@app.get("/v1/admin/audit")
async def admin_audit(_: AdminDep, entity_type: str | None = None,
                      entity_id: str | None = None) -> list[AuditEntry]:
    entries = app.state.book.audit_log
    if entity_type is not None:
        entries = [a for a in entries if a.entity_type == entity_type]
    if entity_id is not None:
        entries = [a for a in entries if a.entity_id == entity_id]
    return [AuditEntry(**asdict(a)) for a in entries]
