"""
JSON snapshots of the whole service state.

One document holds the engine (config, markets, LP positions, user info),
the wallet ledger, the resolution book and the auth store's key hashes.
The API writes it after every mutation and reads it once at startup, so
there is no event log to replay. Amounts are integer micro-units and go
through JSON unchanged.

Writes land in `<path>.tmp` first and are moved into place with
os.replace, so an interrupted save keeps the previous snapshot.
"""

import json
import os
from dataclasses import asdict

from predmarket.auth import AuthStore, User
from predmarket.market_engine import MarketEngine
from predmarket.models import (
    AuditRecord, Condition, ConditionResult, Config, Dispute, EvidenceSource,
    ExclusionResult, FeeOverride, LPPosition, MachineLogic, Market,
    Resolution, ResolutionCriteria, Transaction, UserInfo, WalletAccount,
)
from predmarket.resolution import ResolutionBook
from predmarket.wallets import WalletLedger


SNAPSHOT_VERSION = 1


def _dump_wallets(ledger: WalletLedger) -> dict:
    return {
        "accounts": [asdict(a) for a in ledger.accounts.values()],
        "transactions": [asdict(t) for t in ledger.transactions],
        "next_tx_id": ledger.next_tx_id,
    }


def _dump_book(book: ResolutionBook) -> dict:
    return {
        "resolutions": [asdict(r) for r in book.resolutions.values()],
        "disputes": [asdict(d) for d in book.disputes.values()],
        "audit_log": [asdict(a) for a in book.audit_log],
        "next_resolution_id": book.next_resolution_id,
        "next_dispute_id": book.next_dispute_id,
        "next_audit_id": book.next_audit_id,
    }


def save_snapshot(engine: MarketEngine, path: str,
                  book: ResolutionBook | None = None,
                  auth_store: AuthStore | None = None) -> None:
    snapshot = {
        "version": SNAPSHOT_VERSION,
        "config": asdict(engine.config),
        "markets": [asdict(m) for m in engine.markets.values()],
        "positions": [asdict(p) for p in engine.positions.values()],
        "users": [asdict(u) for u in engine.users.values()],
        "wallets": _dump_wallets(engine.wallets),
        "resolutions": _dump_book(book or ResolutionBook()),
        "auth": {"users": [asdict(u) for u in auth_store.users.values()]
                 if auth_store else []},
    }
    staging = f"{path}.tmp"
    with open(staging, "w") as out:
        json.dump(snapshot, out, indent=2)
    os.replace(staging, path)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _market(d: dict) -> Market:
    fields = dict(d, fee_override=FeeOverride(**d["fee_override"]))
    fields["q"] = {side: int(v) for side, v in d["q"].items()}
    return Market(**fields)


def _criteria(d: dict) -> ResolutionCriteria:
    return ResolutionCriteria(
        must_meet_all=[Condition(**c) for c in d["must_meet_all"]],
        must_not_count=[Condition(**c) for c in d["must_not_count"]],
        allowed_sources=[EvidenceSource(**s) for s in d["allowed_sources"]],
        logic=MachineLogic(**d["logic"]),
    )


def _resolution(d: dict) -> Resolution:
    return Resolution(**dict(
        d,
        criteria=_criteria(d["criteria"]),
        must_meet_all_results=[ConditionResult(**r)
                               for r in d["must_meet_all_results"]],
        must_not_count_results=[ExclusionResult(**r)
                                for r in d["must_not_count_results"]],
    ))


def _wallets(d: dict) -> WalletLedger:
    ledger = WalletLedger()
    ledger.accounts = {a["address"]: WalletAccount(**a) for a in d["accounts"]}
    ledger.transactions = [Transaction(**t) for t in d["transactions"]]
    ledger.next_tx_id = d["next_tx_id"]
    return ledger


def _book(d: dict) -> ResolutionBook:
    book = ResolutionBook()
    book.resolutions = {r["id"]: _resolution(r) for r in d["resolutions"]}
    book.disputes = {x["id"]: Dispute(**x) for x in d["disputes"]}
    book.audit_log = [AuditRecord(**a) for a in d["audit_log"]]
    book.next_resolution_id = d["next_resolution_id"]
    book.next_dispute_id = d["next_dispute_id"]
    book.next_audit_id = d["next_audit_id"]
    return book


def load_snapshot(path: str) -> tuple[MarketEngine, ResolutionBook, AuthStore]:
    """Rebuild (engine, resolution book, auth store) from a snapshot file.

    Raises ValueError for a snapshot written by a newer release.
    """
    with open(path) as src:
        snapshot = json.load(src)

    version = snapshot.get("version", 1)
    if version > SNAPSHOT_VERSION:
        raise ValueError(f"snapshot version {version} is newer than "
                         f"{SNAPSHOT_VERSION}")

    engine = MarketEngine(config=Config(**snapshot["config"]),
                          wallets=_wallets(snapshot["wallets"]))
    engine.markets = {m["address"]: _market(m) for m in snapshot["markets"]}
    engine.positions = {p["address"]: LPPosition(**p)
                        for p in snapshot["positions"]}
    engine.users = {u["address"]: UserInfo(**u) for u in snapshot["users"]}

    auth_store = AuthStore()
    for u in snapshot["auth"]["users"]:
        auth_store.add(User(**u))

    return engine, _book(snapshot["resolutions"]), auth_store
