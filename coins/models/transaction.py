from django.db import models
from django.utils import timezone

from coins.exceptions import ImmutableRecordError


class TransactionQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableRecordError()

    def delete(self):
        raise ImmutableRecordError()


class Transaction(models.Model):
    """
    One coin movement between two wallets.

    The log is append-only: a row is written exactly once, in the same
    database transaction as the two balance updates it describes, and is
    never changed or removed afterwards.
    """

    class TransactionType(models.TextChoices):
        PURCHASE = "PURCHASE", "Purchase"
        GIVEAWAY = "GIVEAWAY", "Giveaway"
        TRANSFER = "TRANSFER", "Transfer"

    from_user_id = models.BigIntegerField()
    to_user_id = models.BigIntegerField()
    amount = models.BigIntegerField()
    transaction_type = models.CharField(
        max_length=16,
        choices=TransactionType.choices,
    )
    timestamp = models.DateTimeField(default=timezone.now)
    reference_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="External payment reference, e.g. a Stripe payment intent id.",
    )
    description = models.TextField(blank=True, default="")

    objects = TransactionQuerySet.as_manager()

    class Meta:
        ordering = ["-timestamp", "-id"]
        indexes = [
            models.Index(fields=["from_user_id", "timestamp"], name="idx_tx_from_user"),
            models.Index(fields=["to_user_id", "timestamp"], name="idx_tx_to_user"),
            models.Index(fields=["timestamp"], name="idx_tx_timestamp"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="transaction_amount_positive",
            ),
        ]

    def __str__(self):
        return (
            f"Transaction {self.id} | {self.transaction_type} | "
            f"{self.from_user_id} -> {self.to_user_id} | {self.amount}"
        )

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError()

    @classmethod
    def for_user(cls, user_id):
        """Transactions where the user is either the source or destination."""
        return cls.objects.filter(
            models.Q(from_user_id=user_id) | models.Q(to_user_id=user_id)
        )
