import dataclasses
import logging
import threading
from datetime import datetime
from typing import Optional

from django.conf import settings
from django.utils import timezone

from coins.exceptions import LedgerStoreError, LedgerTimeout
from coins.stores.base import LedgerStore

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class WalletRecord:
    user_id: int
    balance: int
    last_updated: datetime


@dataclasses.dataclass(frozen=True)
class TransactionRecord:
    id: int
    from_user_id: int
    to_user_id: int
    amount: int
    transaction_type: str
    timestamp: datetime
    reference_id: Optional[str]
    description: str


@dataclasses.dataclass(frozen=True)
class SupplyRecord:
    total_amount: int
    minted_amount: int = 0


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger store for tests and tooling.

    Transactions are serializable: one re-entrant lock is held for the whole
    unit of work, so concurrent callers queue instead of interleaving. If the
    unit of work raises, wallets, supply and the log are restored to the
    snapshot taken when it started. A nested ``run_in_transaction`` joins the
    outer one.
    """

    def __init__(self, timeout_ms=None, supply=None):
        if timeout_ms is None:
            timeout_ms = getattr(settings, "COINS_TRANSACTION_TIMEOUT_MS", 5000)
        self.timeout_ms = timeout_ms
        self.supply = supply
        self.wallets = {}
        self.transactions = []
        self._last_id = 0
        self._lock = threading.RLock()
        self._local = threading.local()

    def seed_wallet(self, user_id, balance):
        """Create or overwrite a wallet outside the ledger, for fixtures."""
        with self._lock:
            self.wallets[user_id] = WalletRecord(user_id, balance, timezone.now())

    def run_in_transaction(self, fn):
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                return fn()
            finally:
                self._local.depth = depth

        timeout = self.timeout_ms / 1000 if self.timeout_ms else -1
        if not self._lock.acquire(timeout=timeout):
            raise LedgerTimeout()
        snapshot = (dict(self.wallets), len(self.transactions), self.supply, self._last_id)
        self._local.depth = 1
        try:
            return fn()
        except BaseException:
            self.wallets, log_length, self.supply, self._last_id = snapshot
            del self.transactions[log_length:]
            raise
        finally:
            self._local.depth = 0
            self._lock.release()

    def _require_transaction(self):
        if not getattr(self._local, "depth", 0):
            raise LedgerStoreError("Wallet mutation outside of a ledger transaction.")

    def get_wallet(self, user_id, lock=True):
        return self.wallets.get(user_id)

    def create_wallet(self, user_id, initial_balance=0):
        self._require_transaction()
        if user_id not in self.wallets:
            self.wallets[user_id] = WalletRecord(user_id, initial_balance, timezone.now())
            logger.info("Wallet created: user=%s balance=%d", user_id, initial_balance)
        return self.wallets[user_id]

    def set_balance(self, user_id, new_balance):
        self._require_transaction()
        if new_balance < 0:
            raise LedgerStoreError("Wallet balance may not be negative.")
        self.wallets[user_id] = dataclasses.replace(
            self.wallets[user_id], balance=new_balance, last_updated=timezone.now()
        )

    def append_transaction(
        self,
        from_user_id,
        to_user_id,
        amount,
        transaction_type,
        reference_id=None,
        description="",
    ):
        self._require_transaction()
        self._last_id += 1
        record = TransactionRecord(
            id=self._last_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            transaction_type=str(transaction_type),
            timestamp=timezone.now(),
            reference_id=reference_id,
            description=description or "",
        )
        self.transactions.append(record)
        return record

    def query_supply(self):
        return self.supply

    def list_transactions_for_user(self, user_id, limit, offset):
        with self._lock:
            matching = [
                tx
                for tx in self.transactions
                if user_id in (tx.from_user_id, tx.to_user_id)
            ]
        matching.sort(key=lambda tx: (tx.timestamp, tx.id), reverse=True)
        return matching[offset : offset + limit]
