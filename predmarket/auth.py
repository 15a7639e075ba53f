"""
Wallet credentials.

Each registered username owns one deterministic wallet address and one
live API key. Keys are handed out once in the clear and kept only as
sha256 digests, so a leaked state file cannot be replayed as a bearer
token. `rotate_key` retires the previous digest immediately.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

from predmarket.addresses import derive_address


WALLET_SEED = "wallet"
KEY_BYTES = 32


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def digest(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def wallet_for(username: str) -> str:
    return derive_address(WALLET_SEED, username)


@dataclass
class User:
    username: str
    wallet: str
    api_key_hash: str
    created_at: str = field(default_factory=_utcnow)
    last_seen_at: str = field(default_factory=_utcnow)


class AuthStore:
    def __init__(self):
        self.users: dict[str, User] = {}
        self.key_to_user: dict[str, User] = {}

    def _issue(self, user: User) -> str:
        self.key_to_user.pop(user.api_key_hash, None)
        raw_key = secrets.token_urlsafe(KEY_BYTES)
        user.api_key_hash = digest(raw_key)
        self.key_to_user[user.api_key_hash] = user
        return raw_key

    def register_user(self, username: str) -> tuple[User, str]:
        """Create a wallet identity. Returns the user and its one-time key."""
        username = username.strip()
        if not username:
            raise ValueError("username_required")
        if username in self.users:
            raise ValueError("username_taken")
        user = User(username=username, wallet=wallet_for(username),
                    api_key_hash="")
        self.users[username] = user
        return user, self._issue(user)

    def rotate_key(self, username: str) -> tuple[User, str]:
        if username not in self.users:
            raise ValueError("user_not_found")
        user = self.users[username]
        user.last_seen_at = _utcnow()
        return user, self._issue(user)

    def authenticate(self, raw_key: str) -> User | None:
        user = self.key_to_user.get(digest(raw_key))
        if user is not None:
            user.last_seen_at = _utcnow()
        return user

    def add(self, user: User) -> None:
        """Re-index a user restored from persisted state."""
        self.users[user.username] = user
        self.key_to_user[user.api_key_hash] = user
