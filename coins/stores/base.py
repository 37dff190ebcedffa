import abc


class LedgerStore(abc.ABC):
    """
    Durable storage for wallets and the append-only transaction log.

    The coin ledger service is the only caller. Every mutation it makes runs
    inside ``run_in_transaction`` so a balance change is never visible without
    its matching transaction record, and two operations touching the same
    wallet cannot both act on a stale balance.

    Records returned by a store expose the attributes of the Django models
    (``user_id``, ``balance``, ``last_updated`` for wallets; ``id``,
    ``from_user_id``, ``to_user_id``, ``amount``, ``transaction_type``,
    ``timestamp``, ``reference_id``, ``description`` for transactions).
    """

    @abc.abstractmethod
    def run_in_transaction(self, fn):
        """Run ``fn()`` atomically and return its result.

        Any exception aborts the whole unit of work and propagates. Store
        faults surface as ``LedgerStoreError`` (``LedgerTimeout`` when the
        configured bound is exceeded).
        """

    @abc.abstractmethod
    def get_wallet(self, user_id, lock=True):
        """Return the wallet for ``user_id`` or None.

        With ``lock`` the wallet stays locked against concurrent writers
        until the enclosing transaction ends.
        """

    @abc.abstractmethod
    def create_wallet(self, user_id, initial_balance=0):
        """Create (or, if a concurrent caller won, return) the locked wallet."""

    @abc.abstractmethod
    def set_balance(self, user_id, new_balance):
        """Overwrite a wallet balance. Only valid inside a transaction."""

    @abc.abstractmethod
    def append_transaction(
        self,
        from_user_id,
        to_user_id,
        amount,
        transaction_type,
        reference_id=None,
        description="",
    ):
        """Append a record to the log, assigning its id and timestamp."""

    @abc.abstractmethod
    def query_supply(self):
        """Return the supply ledger record or None."""

    @abc.abstractmethod
    def list_transactions_for_user(self, user_id, limit, offset):
        """Transactions where the user is source or destination, newest first."""
