"""
Collateral ledger. Holds every collateral balance the engine touches: user
wallets, the team wallet and each market's vault.

Every balance mutation produces a Transaction. The ledger doesn't know
about markets, pools or LMSR; it only moves collateral between addresses.

Invariant: sum(tx.delta for tx in transactions) == sum of all balances,
and the only way collateral enters is `deposit`.
"""

from predmarket.errors import InsufficientBalance, ValidationError
from predmarket.models import Transaction, WalletAccount


class WalletLedger:

    def __init__(self):
        self.accounts: dict[str, WalletAccount] = {}
        self.transactions: list[Transaction] = []
        self.next_tx_id = 1

    def account(self, address: str) -> WalletAccount:
        """Get or lazily create the account at `address`."""
        acc = self.accounts.get(address)
        if acc is None:
            acc = WalletAccount(address=address)
            self.accounts[address] = acc
        return acc

    def balance(self, address: str) -> int:
        acc = self.accounts.get(address)
        return acc.balance if acc else 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deposit(self, address: str, amount: int,
                reason: str = "deposit") -> Transaction:
        """Credit collateral from outside the system."""
        if amount <= 0:
            raise ValidationError("deposit amount must be positive")
        acc = self.account(address)
        acc.balance += amount
        return self._record(address, amount, reason)

    def transfer(self, src: str, dst: str, amount: int, reason: str,
                 market: str | None = None) -> None:
        """Move collateral. Raises InsufficientBalance if src is short."""
        if amount < 0:
            raise ValidationError("transfer amount must be non-negative")
        if amount == 0:
            return
        source = self.account(src)
        if source.balance < amount:
            raise InsufficientBalance(
                f"account {src}: need {amount}, have {source.balance}")
        target = self.account(dst)
        source.balance -= amount
        target.balance += amount
        self._record(src, -amount, reason, market)
        self._record(dst, amount, reason, market)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_deposited(self) -> int:
        return sum(tx.delta for tx in self.transactions
                   if tx.reason == "deposit")

    def total_balance(self) -> int:
        return sum(acc.balance for acc in self.accounts.values())

    # ------------------------------------------------------------------
    # Savepoints
    # ------------------------------------------------------------------

    def savepoint(self) -> tuple[int, int, int]:
        return len(self.transactions), self.next_tx_id, len(self.accounts)

    def rollback(self, mark: tuple[int, int, int]) -> None:
        """Undo every transaction recorded since `mark`."""
        tx_count, next_tx_id, account_count = mark
        for tx in reversed(self.transactions[tx_count:]):
            self.accounts[tx.account].balance -= tx.delta
        del self.transactions[tx_count:]
        self.next_tx_id = next_tx_id
        # accounts are only ever appended, so new ones sit at the end
        for address in list(self.accounts)[account_count:]:
            del self.accounts[address]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record(self, address: str, delta: int, reason: str,
                market: str | None = None) -> Transaction:
        tx = Transaction(id=self.next_tx_id, account=address, delta=delta,
                         reason=reason, market=market)
        self.next_tx_id += 1
        self.transactions.append(tx)
        return tx
