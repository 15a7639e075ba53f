"""
Pydantic request/response models for the API.
All monetary values and share counts are decimal strings (6 dp).
"""

from pydantic import BaseModel


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str

class RegisterResponse(BaseModel):
    api_key: str
    username: str
    wallet: str

class WalletResponse(BaseModel):
    wallet: str
    balance: str


# --- Config (admin) ---

class ConfigureRequest(BaseModel):
    admin: str
    team_wallet: str
    collateral_mint: str = "USDC"
    platform_buy_fee_bps: int = 30
    platform_sell_fee_bps: int = 30
    lp_buy_fee_bps: int = 20
    lp_sell_fee_bps: int = 20
    whitelist_enabled: bool = False
    insurance_enabled: bool = False
    lp_insurance_allocation_bps: int = 2000
    insurance_loss_threshold_bps: int = 1000
    insurance_max_compensation_bps: int = 5000
    vault_min_balance: str = "1"
    min_liquidity: str = "10"
    dispute_window_seconds: int = 86400
    paused: bool = False

class ConfigResponse(BaseModel):
    admin: str
    pending_admin: str
    team_wallet: str
    collateral_mint: str
    platform_buy_fee_bps: int
    platform_sell_fee_bps: int
    lp_buy_fee_bps: int
    lp_sell_fee_bps: int
    whitelist_enabled: bool
    whitelist: list[str]
    insurance_enabled: bool
    insurance_pool_balance: str
    vault_min_balance: str
    min_liquidity: str
    dispute_window_seconds: int
    paused: bool
    initialized: bool

class WhitelistRequest(BaseModel):
    creators: list[str]
    enabled: bool | None = None

class NominateAdminRequest(BaseModel):
    nominee: str

class PauseRequest(BaseModel):
    paused: bool

class DepositRequest(BaseModel):
    wallet: str
    amount: str

class FeeOverrideRequest(BaseModel):
    enabled: bool
    platform_buy_fee_bps: int = 0
    platform_sell_fee_bps: int = 0
    lp_buy_fee_bps: int = 0
    lp_sell_fee_bps: int = 0


# --- Markets ---

class CreateMarketRequest(BaseModel):
    question: str
    slug: str
    b: str
    end_ts: int | None = None
    initial_probability_bps: int = 5000

class MarketSummary(BaseModel):
    address: str
    question: str
    slug: str
    creator: str
    status: str
    outcome: str
    finalized: bool
    prices: dict[str, str]
    b: str
    pool_value: str
    total_lp_shares: str
    circuit_breaker_active: bool
    end_ts: int | None

class MarketDetail(MarketSummary):
    yes_token: str
    no_token: str
    vault: str
    q: dict[str, str]
    pool_collateral: str
    pool_yes: str
    pool_no: str
    total_collateral_locked: str
    accumulated_lp_fees: str
    insurance_contribution: str
    fee_override: dict
    created_ts: int
    resolved_ts: int | None


# --- Trading ---

class AmountRequest(BaseModel):
    amount: str

class SwapRequest(BaseModel):
    direction: str
    token_type: str
    amount: str
    minimum_receive: str = "0"
    deadline: int | None = None

class TradeResponse(BaseModel):
    direction: str
    token_type: str
    amount_in: str
    amount_out: str
    platform_fee: str
    lp_fee: str
    price_yes_after: str

class UserInfoResponse(BaseModel):
    market: str
    owner: str
    yes_balance: str
    no_balance: str
    yes_cost_basis: str
    no_cost_basis: str
    realized_pnl: str
    collateral_in: str
    collateral_out: str


# --- Liquidity ---

class PositionResponse(BaseModel):
    market: str
    owner: str
    lp_shares: str
    invested_collateral: str
    deposit_ts: int
    pending_fees: str

class WithdrawRequest(BaseModel):
    shares: str
    min_out: str = "0"

class WithdrawResponse(BaseModel):
    shares: str
    gross: str
    holding_seconds: int
    penalty_bps: int
    penalty: str
    internal_slippage_bps: int
    insurance_compensation: str
    final_out: str
    fees_out: str

class WithdrawPreviewResponse(WithdrawResponse):
    imbalance_ratio: int
    max_withdraw_bps: int
    max_withdraw_shares: str
    circuit_breaker_active: bool
    trip_reasons: list[str]

class FeeClaimPreview(BaseModel):
    amount: str
    vault_balance_after: str
    claimable: bool
    reason: str | None

class RewardsPreview(BaseModel):
    yes_balance: str
    no_balance: str
    payout: str
    vault_balance_after: str
    claimable: bool
    reason: str | None

class ClaimResponse(BaseModel):
    amount: str


# --- Resolution ---

class ResolveRequest(BaseModel):
    outcome: str

class ConditionModel(BaseModel):
    text: str
    pattern: str | None = None
    unless: list[str] = []

class SourceModel(BaseModel):
    name: str
    url: str
    condition: str = ""

class LogicModel(BaseModel):
    expression: str = "all(must_meet_all) and not any(must_not_count)"
    then: str = "YES"
    otherwise: str = "NO"

class CriteriaModel(BaseModel):
    must_meet_all: list[ConditionModel]
    must_not_count: list[ConditionModel] = []
    allowed_sources: list[SourceModel]
    logic: LogicModel = LogicModel()

class OracleResolveRequest(BaseModel):
    criteria: CriteriaModel

class ResolutionResponse(BaseModel):
    id: int
    market: str
    question: str
    final_result: str
    reasoning: str
    status: str
    evidence_hash: str
    evidence_sources: list[dict]
    must_meet_all_results: list[dict]
    must_not_count_results: list[dict]
    resolved_at: str
    dispute_window_ends: int

class DisputeRequest(BaseModel):
    reason: str
    evidence_urls: list[str] = []

class DisputeResponse(BaseModel):
    id: int
    resolution_id: int
    user: str
    reason: str
    evidence_urls: list[str]
    status: str
    new_result: str | None
    created_at: str
    resolved_at: str | None
    admin_review: dict | None = None

class ManualReviewRequest(BaseModel):
    decision: str           # "uphold" | "overturn"
    reason: str
    new_result: str | None = None

class AuditEntry(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: str
    actor: str
    details: dict
    created_at: str

class HealthResponse(BaseModel):
    status: str
    markets: int
    wallets: int
    pending_disputes: int
