"""
Data models for the prediction-market engine.

Two domains:
- Ledger side: config, markets, LP positions, user info, wallet transactions.
  All amounts are ints in micro-units (6 dp). Timestamps used in arithmetic
  are unix seconds.
- Resolution side: criteria, resolutions, disputes, audit records. These
  live off-ledger and carry ISO-8601 timestamps.

Operations that take many parameters accept a typed request dataclass
(CreateMarketParams, SwapParams, ...) instead of a positional list.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from predmarket import addresses
from predmarket.lmsr import YES, NO


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

TOKEN_TYPES = (YES, NO)
DIRECTIONS = ("buy", "sell")

MARKET_ACTIVE = "active"
MARKET_PAUSED = "paused"
MARKET_RESOLVED = "resolved"

OUTCOME_UNSET = "unset"
OUTCOME_INVALID = "invalid"
OUTCOMES = (YES, NO, OUTCOME_INVALID)

DISPUTE_PENDING = "pending"
DISPUTE_REVIEWING = "reviewing"
DISPUTE_UPHELD = "upheld"
DISPUTE_OVERTURNED = "overturned"
DISPUTE_ESCALATED = "escalated"
DISPUTE_TERMINAL = (DISPUTE_UPHELD, DISPUTE_OVERTURNED, DISPUTE_ESCALATED)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------

@dataclass
class FeeOverride:
    """Per-market fee bps. Ignored unless `enabled`."""
    enabled: bool = False
    platform_buy_fee_bps: int = 0
    platform_sell_fee_bps: int = 0
    lp_buy_fee_bps: int = 0
    lp_sell_fee_bps: int = 0


@dataclass
class Config:
    """
    Global engine configuration. One instance per engine, passed explicitly
    to every pure function that needs it; only `configure` mutates it.
    """
    admin: str = ""
    pending_admin: str = ""
    team_wallet: str = ""
    collateral_mint: str = "USDC"
    platform_buy_fee_bps: int = 30
    platform_sell_fee_bps: int = 30
    lp_buy_fee_bps: int = 20
    lp_sell_fee_bps: int = 20
    whitelist_enabled: bool = False
    whitelist: list[str] = field(default_factory=list)
    insurance_enabled: bool = False
    insurance_pool_balance: int = 0
    lp_insurance_allocation_bps: int = 2000
    insurance_loss_threshold_bps: int = 1000
    insurance_max_compensation_bps: int = 5000
    vault_min_balance: int = 1_000_000
    min_liquidity: int = 10_000_000
    dispute_window_seconds: int = 24 * 3600
    paused: bool = False
    initialized: bool = False

    @property
    def address(self) -> str:
        return addresses.config_address()


@dataclass
class Market:
    """
    One binary market: LMSR state, pool inventory, fee and risk bookkeeping.

    q tracks tokens the AMM has sold on net. pool_yes / pool_no are tokens
    the pool holds. total_collateral_locked backs every outstanding complete
    set, wherever its tokens sit.
    """
    address: str
    creator: str
    question: str
    slug: str
    yes_token: str
    no_token: str
    vault: str
    b: int
    q: dict[str, int] = field(default_factory=lambda: {YES: 0, NO: 0})
    pool_collateral: int = 0
    pool_yes: int = 0
    pool_no: int = 0
    initial_yes_reserve: int = 0
    initial_no_reserve: int = 0
    total_collateral_locked: int = 0
    total_lp_shares: int = 0
    locked_lp_shares: int = 0
    fee_override: FeeOverride = field(default_factory=FeeOverride)
    accumulated_lp_fees: int = 0
    fee_per_share_cumulative: int = 0
    insurance_contribution: int = 0
    circuit_breaker_active: bool = False
    circuit_breaker_triggered_at: Optional[int] = None
    withdraw_window_start: int = 0
    withdraw_window_total: int = 0
    status: str = MARKET_ACTIVE
    outcome: str = OUTCOME_UNSET
    created_ts: int = 0
    end_ts: Optional[int] = None
    resolved_ts: Optional[int] = None
    finalized: bool = False

    @property
    def seeded(self) -> bool:
        return self.total_lp_shares > 0


@dataclass
class LPPosition:
    """
    An LP's stake in one market. deposit_ts is the first deposit and is
    never moved by later deposits, so splitting deposits can't dodge the
    exit penalty.
    """
    address: str
    owner: str
    market: str
    lp_shares: int = 0
    invested_collateral: int = 0
    deposit_ts: int = 0
    last_fee_per_share: int = 0
    unclaimed_fees: int = 0


@dataclass
class UserInfo:
    """Per (user, market) token balances and realized P&L."""
    address: str
    owner: str
    market: str
    yes_balance: int = 0
    no_balance: int = 0
    yes_cost_basis: int = 0
    no_cost_basis: int = 0
    realized_pnl: int = 0
    collateral_in: int = 0
    collateral_out: int = 0

    def balance(self, token: str) -> int:
        return self.yes_balance if token == YES else self.no_balance


@dataclass
class WalletAccount:
    """A collateral holder: user wallet, team wallet or market vault."""
    address: str
    balance: int = 0
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    """Append-only ledger entry. Every balance change gets one."""
    id: int
    account: str
    delta: int
    reason: str
    market: Optional[str] = None
    created_at: str = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Request structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConfigParams:
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
    vault_min_balance: int = 1_000_000
    min_liquidity: int = 10_000_000
    dispute_window_seconds: int = 24 * 3600
    paused: bool = False


@dataclass(frozen=True)
class FeeOverrideParams:
    enabled: bool
    platform_buy_fee_bps: int = 0
    platform_sell_fee_bps: int = 0
    lp_buy_fee_bps: int = 0
    lp_sell_fee_bps: int = 0


@dataclass(frozen=True)
class CreateMarketParams:
    creator: str
    question: str
    slug: str
    b: int
    end_ts: Optional[int] = None
    initial_probability_bps: int = 5000


@dataclass(frozen=True)
class SwapParams:
    market: str
    user: str
    direction: str          # "buy" | "sell"
    token_type: str         # "yes" | "no"
    amount: int             # buy: collateral in, sell: tokens in
    minimum_receive: int = 0
    deadline: Optional[int] = None


# ---------------------------------------------------------------------------
# Resolution side
# ---------------------------------------------------------------------------

@dataclass
class Condition:
    """
    A literal evidence condition. `pattern` is the phrase that must appear
    (defaults to `text`); any `unless` phrase in the same source makes the
    evidence ambiguous.
    """
    text: str
    pattern: Optional[str] = None
    unless: list[str] = field(default_factory=list)

    @property
    def phrase(self) -> str:
        return self.pattern or self.text


@dataclass
class EvidenceSource:
    name: str
    url: str
    condition: str = ""


@dataclass
class MachineLogic:
    expression: str = "all(must_meet_all) and not any(must_not_count)"
    then: str = "YES"
    otherwise: str = "NO"


@dataclass
class ResolutionCriteria:
    must_meet_all: list[Condition]
    must_not_count: list[Condition] = field(default_factory=list)
    allowed_sources: list[EvidenceSource] = field(default_factory=list)
    logic: MachineLogic = field(default_factory=MachineLogic)


@dataclass
class Evidence:
    source_url: str
    source_name: str
    content: str
    fetched_at: str
    content_hash: str
    http_status: int
    success: bool
    error: Optional[str] = None


@dataclass
class ConditionResult:
    condition: str
    met: bool
    evidence: str


@dataclass
class ExclusionResult:
    condition: str
    triggered: bool
    evidence: Optional[str] = None


@dataclass
class Resolution:
    id: int
    market: str
    question: str
    criteria: ResolutionCriteria
    evidence_hash: str
    evidence_sources: list[dict]
    must_meet_all_results: list[ConditionResult]
    must_not_count_results: list[ExclusionResult]
    final_result: str               # "YES" | "NO"
    reasoning: str
    status: str = "resolved"        # "resolved", "disputed", "finalized"
    resolved_at: str = field(default_factory=_now)
    dispute_window_ends: int = 0


@dataclass
class Dispute:
    """
    A challenge to a resolution. status doubles as the processing lease:
    pending -> reviewing (lease held) -> upheld | overturned | escalated.
    An operator can settle pending, reviewing or escalated disputes as
    upheld or overturned.
    """
    id: int
    resolution_id: int
    user: str
    reason: str
    evidence_urls: list[str] = field(default_factory=list)
    status: str = DISPUTE_PENDING
    ai_review: Optional[dict] = None
    admin_review: Optional[dict] = None
    new_result: Optional[str] = None
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None
    deliveries: int = 0

    @property
    def terminal(self) -> bool:
        return self.status in DISPUTE_TERMINAL


@dataclass
class AuditRecord:
    """Append-only. Never edited after it is written."""
    id: int
    action: str
    entity_type: str
    entity_id: str
    actor: str
    details: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
