from django.db import models

from coins.constants import SYSTEM_USER_ID
from coins.models.base import BaseModel


class Wallet(BaseModel):
    """
    A user's DasWos Coins balance, stored in whole coins.

    Keyed by ``user_id`` rather than a foreign key so the system wallet
    (``user_id = 0``) needs no user row. Wallets are created lazily and never
    deleted. Concurrency safety is handled by the ledger store via
    select_for_update(); the check constraint is the last line of defense
    against a negative balance.
    """

    user_id = models.BigIntegerField(unique=True)
    balance = models.BigIntegerField(default=0)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(balance__gte=0),
                name="wallet_balance_non_negative",
            ),
        ]

    def __str__(self):
        return f"Wallet user={self.user_id} (balance={self.balance})"

    @property
    def last_updated(self):
        return self.updated_at

    @property
    def is_system(self):
        return self.user_id == SYSTEM_USER_ID
