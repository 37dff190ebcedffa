from django.db import models

from coins.models.base import BaseModel


class SupplyLedger(BaseModel):
    """
    Ceiling on the coins that may ever be put into circulation.

    Singleton by convention (provisioned once by ``provision_coins``). It is
    advisory: the checkout route compares against it before opening a
    payment session, but ledger operations never update ``minted_amount``.
    """

    total_amount = models.BigIntegerField()
    minted_amount = models.BigIntegerField(default=0)

    class Meta(BaseModel.Meta):
        verbose_name = "supply ledger"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(minted_amount__lte=models.F("total_amount")),
                name="supply_minted_within_total",
            ),
        ]

    def __str__(self):
        return f"Supply {self.minted_amount}/{self.total_amount}"

    @classmethod
    def current(cls):
        return cls.objects.order_by("id").first()
