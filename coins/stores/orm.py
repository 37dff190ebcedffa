import logging

from django.conf import settings
from django.db import DatabaseError, connections, transaction
from django.utils import timezone

from coins.exceptions import LedgerStoreError, LedgerTimeout
from coins.models import SupplyLedger, Transaction, Wallet
from coins.stores.base import LedgerStore

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs for query_canceled (statement_timeout) and
# lock_not_available (lock_timeout).
TIMEOUT_SQLSTATES = {"57014", "55P03"}


class DjangoLedgerStore(LedgerStore):
    """
    Ledger store backed by the Django ORM.

    Uses select_for_update() to hold a row-level lock on every wallet the
    service reads for a mutation, so concurrent operations on the same wallet
    are serialized by the database across processes. On PostgreSQL each
    transaction is bounded by ``COINS_TRANSACTION_TIMEOUT_MS``.
    """

    def __init__(self, using="default", timeout_ms=None):
        self.using = using
        if timeout_ms is None:
            timeout_ms = getattr(settings, "COINS_TRANSACTION_TIMEOUT_MS", 5000)
        self.timeout_ms = timeout_ms

    def run_in_transaction(self, fn):
        try:
            with transaction.atomic(using=self.using):
                self._apply_timeout()
                return fn()
        except DatabaseError as exc:
            sqlstate = getattr(exc.__cause__, "pgcode", None) or getattr(
                exc.__cause__, "sqlstate", None
            )
            if sqlstate in TIMEOUT_SQLSTATES:
                logger.warning("Ledger transaction timed out: %s", exc)
                raise LedgerTimeout() from exc
            logger.error("Ledger transaction aborted by the database: %s", exc)
            raise LedgerStoreError(str(exc)) from exc

    def _apply_timeout(self):
        connection = connections[self.using]
        if not self.timeout_ms or connection.vendor != "postgresql":
            return
        with connection.cursor() as cursor:
            timeout = int(self.timeout_ms)
            cursor.execute(f"SET LOCAL statement_timeout = {timeout}")
            cursor.execute(f"SET LOCAL lock_timeout = {timeout}")

    def get_wallet(self, user_id, lock=True):
        queryset = Wallet.objects.using(self.using)
        if lock:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(user_id=user_id)
        except Wallet.DoesNotExist:
            return None

    def create_wallet(self, user_id, initial_balance=0):
        # get_or_create retries the read inside a savepoint when a concurrent
        # insert wins the unique constraint.
        wallet, created = Wallet.objects.using(self.using).get_or_create(
            user_id=user_id, defaults={"balance": initial_balance}
        )
        if created:
            logger.info("Wallet created: user=%s balance=%d", user_id, initial_balance)
            return wallet
        return self.get_wallet(user_id)

    def set_balance(self, user_id, new_balance):
        Wallet.objects.using(self.using).filter(user_id=user_id).update(
            balance=new_balance, updated_at=timezone.now()
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
        return Transaction.objects.using(self.using).create(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            transaction_type=transaction_type,
            timestamp=timezone.now(),
            reference_id=reference_id,
            description=description or "",
        )

    def query_supply(self):
        return SupplyLedger.objects.using(self.using).order_by("id").first()

    def list_transactions_for_user(self, user_id, limit, offset):
        queryset = Transaction.for_user(user_id).using(self.using).order_by(
            "-timestamp", "-id"
        )
        return list(queryset[offset : offset + limit])
