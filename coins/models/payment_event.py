from datetime import timedelta

from django.db import models
from django.utils import timezone

from coins.models.base import BaseModel
from coins.models.transaction import Transaction


class PaymentEvent(BaseModel):
    """
    A confirmed payment reported by the Stripe webhook.

    Persisted before the webhook is acknowledged so a payment whose coin
    credit fails is never lost: FAILED events are replayed by the Celery
    reconciliation task until they succeed or run out of retries, and so are
    PENDING events whose processing never finished (the transaction was
    rolled back or the process died after recording). REJECTED
    events carry data the ledger will never accept and are not retried.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PROCESSED = "PROCESSED", "Processed"
        FAILED = "FAILED", "Failed"
        REJECTED = "REJECTED", "Rejected"

    stripe_event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    user_id = models.BigIntegerField(null=True, blank=True)
    coin_amount = models.BigIntegerField()
    reference_id = models.CharField(max_length=255)
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    retry_count = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    ledger_transaction = models.OneToOneField(
        Transaction,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="payment_event",
    )

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["status", "retry_count"], name="idx_event_status_retry"),
        ]

    def __str__(self):
        return f"PaymentEvent {self.stripe_event_id} | user={self.user_id} | {self.status}"

    @classmethod
    def get_retryable(cls, max_retries=5, pending_grace_seconds=300):
        """
        Return events eligible for another credit attempt.

        PENDING events younger than ``pending_grace_seconds`` are left alone;
        the webhook that recorded them may still be processing them.
        """
        stale_before = timezone.now() - timedelta(seconds=pending_grace_seconds)
        return cls.objects.filter(
            models.Q(status=cls.Status.FAILED, retry_count__lt=max_retries)
            | models.Q(status=cls.Status.PENDING, created_at__lt=stale_before)
        )
