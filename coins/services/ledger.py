import logging

from coins.constants import (
    DEFAULT_GIVEAWAY_REASON,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_PURCHASE_DESCRIPTION,
    DEFAULT_TRANSFER_DESCRIPTION,
    SYSTEM_USER_ID,
)
from coins.exceptions import (
    InsufficientBalance,
    InsufficientSystemFunds,
    InvalidAmount,
    InvalidParticipants,
    SenderWalletNotFound,
    SystemWalletMissing,
)
from coins.models import Transaction

logger = logging.getLogger(__name__)


def validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount()


class CoinLedgerService:
    """
    The only component allowed to change DasWos Coins balances.

    Every mutating operation runs validate -> debit source -> credit
    destination -> append record as one unit inside the store's transaction,
    and returns the appended record. Wallets are always locked in ascending
    ``user_id`` order, so the system wallet is locked first and two transfers
    between the same pair of users cannot deadlock.
    """

    def __init__(self, store=None):
        if store is None:
            from coins.stores import DjangoLedgerStore

            store = DjangoLedgerStore()
        self.store = store

    def get_user_balance(self, user_id: int) -> int:
        """Return the balance, creating an empty wallet on first access."""

        def fetch_or_create():
            wallet = self.store.get_wallet(user_id, lock=False)
            if wallet is None:
                wallet = self.store.create_wallet(user_id)
            return wallet.balance

        return self.store.run_in_transaction(fetch_or_create)

    def purchase_coins(self, user_id: int, amount: int, external_payment_id: str):
        """
        Credit coins bought through the payment provider.

        ``external_payment_id`` confirms the money was already collected out
        of band; it is stored as the transaction's ``reference_id``.
        """
        if not external_payment_id:
            raise InvalidParticipants("An external payment reference is required.")
        return self._issue(
            user_id,
            amount,
            transaction_type=Transaction.TransactionType.PURCHASE,
            reference_id=external_payment_id,
            description=DEFAULT_PURCHASE_DESCRIPTION,
        )

    def give_coins(self, user_id: int, amount: int, reason: str = None):
        """Grant coins from the system wallet. Authorization is the caller's job."""
        return self._issue(
            user_id,
            amount,
            transaction_type=Transaction.TransactionType.GIVEAWAY,
            reference_id=None,
            description=reason or DEFAULT_GIVEAWAY_REASON,
        )

    def transfer_coins(
        self, from_user_id: int, to_user_id: int, amount: int, description: str = None
    ):
        """
        Move coins between two users.

        The sender's wallet must already exist; the recipient's is created on
        demand.

        Raises:
            InvalidAmount: If amount is not a positive integer.
            InvalidParticipants: On a self-transfer or one touching the system wallet.
            SenderWalletNotFound: If the sender never had a wallet.
            InsufficientBalance: If the sender cannot cover the amount.
        """
        validate_amount(amount)
        if from_user_id == to_user_id:
            raise InvalidParticipants("Cannot transfer coins to yourself.")
        if SYSTEM_USER_ID in (from_user_id, to_user_id):
            raise InvalidParticipants("Transfers may not involve the system wallet.")
        description = description or DEFAULT_TRANSFER_DESCRIPTION

        def transfer():
            wallets = {
                user_id: self.store.get_wallet(user_id)
                for user_id in sorted((from_user_id, to_user_id))
            }
            sender = wallets[from_user_id]
            if sender is None:
                logger.warning("Transfer rejected (no sender wallet): from=%s", from_user_id)
                raise SenderWalletNotFound()
            if sender.balance < amount:
                logger.warning(
                    "Transfer rejected (insufficient balance): from=%s balance=%d amount=%d",
                    from_user_id,
                    sender.balance,
                    amount,
                )
                raise InsufficientBalance()

            recipient = wallets[to_user_id] or self.store.create_wallet(to_user_id)
            self.store.set_balance(from_user_id, sender.balance - amount)
            self.store.set_balance(to_user_id, recipient.balance + amount)
            return self.store.append_transaction(
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=amount,
                transaction_type=Transaction.TransactionType.TRANSFER,
                reference_id=None,
                description=description,
            )

        tx = self.store.run_in_transaction(transfer)
        logger.info(
            "Transfer completed: from=%s to=%s amount=%d tx=%d",
            from_user_id,
            to_user_id,
            amount,
            tx.id,
        )
        return tx

    def get_total_supply(self) -> dict:
        """Return ``{"total", "minted"}``; zeros while the supply is unprovisioned."""
        supply = self.store.query_supply()
        if supply is None:
            return {"total": 0, "minted": 0}
        return {"total": int(supply.total_amount), "minted": int(supply.minted_amount)}

    def get_user_transaction_history(
        self, user_id: int, limit: int = DEFAULT_HISTORY_LIMIT, offset: int = 0
    ):
        return self.store.list_transactions_for_user(user_id, limit, offset)

    def check_provisioned(self):
        """Raise SystemWalletMissing unless the system wallet exists."""
        if self.store.get_wallet(SYSTEM_USER_ID, lock=False) is None:
            logger.critical("System wallet (user_id=%s) is not provisioned.", SYSTEM_USER_ID)
            raise SystemWalletMissing()

    def _issue(self, user_id, amount, transaction_type, reference_id, description):
        """Move ``amount`` from the system wallet to ``user_id``."""
        validate_amount(amount)
        if user_id == SYSTEM_USER_ID:
            raise InvalidParticipants("Cannot issue coins to the system wallet.")

        def issue():
            system_wallet = self.store.get_wallet(SYSTEM_USER_ID)
            if system_wallet is None:
                logger.critical(
                    "System wallet (user_id=%s) is not provisioned; %s of %d to user=%s aborted.",
                    SYSTEM_USER_ID,
                    transaction_type,
                    amount,
                    user_id,
                )
                raise SystemWalletMissing()

            wallet = self.store.get_wallet(user_id) or self.store.create_wallet(user_id)
            if system_wallet.balance < amount:
                logger.warning(
                    "%s rejected (insufficient system funds): user=%s available=%d amount=%d",
                    transaction_type,
                    user_id,
                    system_wallet.balance,
                    amount,
                )
                raise InsufficientSystemFunds()

            self.store.set_balance(SYSTEM_USER_ID, system_wallet.balance - amount)
            self.store.set_balance(user_id, wallet.balance + amount)
            return self.store.append_transaction(
                from_user_id=SYSTEM_USER_ID,
                to_user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                reference_id=reference_id,
                description=description,
            )

        tx = self.store.run_in_transaction(issue)
        logger.info(
            "%s completed: user=%s amount=%d reference=%s tx=%d",
            transaction_type,
            user_id,
            amount,
            reference_id,
            tx.id,
        )
        return tx
