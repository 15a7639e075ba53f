"""
Deterministic address derivation.

An address is sha256 over length-prefixed seeds, hex encoded. Anyone who
knows the seeds recomputes the same address; no lookup table needed.
Length prefixes keep ("ab", "c") and ("a", "bc") apart.
"""

import hashlib


CONFIG = "config"
MARKET = "market"
MARKET_VAULT = "market_usdc_vault"
USERINFO = "userinfo"
LP_POSITION = "lp_position"
YES_TOKEN = "yes_token"
NO_TOKEN = "no_token"


def derive_address(*seeds: str | bytes) -> str:
    if not seeds:
        raise ValueError("at least one seed is required")
    h = hashlib.sha256()
    for seed in seeds:
        raw = seed.encode() if isinstance(seed, str) else seed
        h.update(len(raw).to_bytes(4, "big"))
        h.update(raw)
    return h.hexdigest()


def config_address() -> str:
    return derive_address(CONFIG)


def token_addresses(creator: str, slug: str) -> tuple[str, str]:
    return (derive_address(YES_TOKEN, creator, slug),
            derive_address(NO_TOKEN, creator, slug))


def market_address(yes_token: str, no_token: str) -> str:
    return derive_address(MARKET, yes_token, no_token)


def vault_address(market: str) -> str:
    return derive_address(MARKET_VAULT, market)


def userinfo_address(market: str, owner: str) -> str:
    return derive_address(USERINFO, market, owner)


def lp_position_address(market: str, owner: str) -> str:
    return derive_address(LP_POSITION, market, owner)
