import logging

from django.db import transaction

from coins.exceptions import (
    CoinLedgerError,
    InvalidParticipants,
    LedgerValidationError,
    SystemWalletMissing,
)
from coins.models import PaymentEvent
from coins.services.ledger import CoinLedgerService

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class MissingPaymentUser(ValueError):
    """The checkout session carries no user to credit."""


def parse_checkout_event(event: dict) -> dict:
    """
    Extract what the ledger needs from a ``checkout.session.completed`` event.

    Raises:
        MissingPaymentUser: If the session metadata has no ``userId``.
    """
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}

    raw_user_id = metadata.get("userId")
    if raw_user_id in (None, ""):
        raise MissingPaymentUser("No user ID provided in session metadata.")
    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError):
        # Recorded anyway; processing rejects it.
        user_id = None

    try:
        coin_amount = int(metadata.get("coinAmount") or 0)
    except (TypeError, ValueError):
        coin_amount = 0

    return {
        "user_id": user_id,
        "coin_amount": coin_amount,
        "reference_id": session.get("payment_intent") or session.get("id") or "",
    }


class PaymentEventService:
    """
    Durable hand-off between the payment webhook and the coin ledger.

    Recording: the webhook persists the event before acknowledging it.
    Processing: the event row is locked, the coins are credited, and the
    outcome is stored in the same database transaction as the credit, so an
    event is credited at most once however many times it is replayed.
    """

    @staticmethod
    def record(event: dict) -> PaymentEvent:
        """
        Persist a checkout completion event, idempotent on the Stripe event id.

        Raises:
            MissingPaymentUser: If the session metadata has no user id. A
                non-numeric one is recorded with ``user_id=None`` and
                rejected by ``process``.
        """
        fields = parse_checkout_event(event)
        payment_event, created = PaymentEvent.objects.get_or_create(
            stripe_event_id=event["id"],
            defaults={"event_type": event["type"], "payload": event, **fields},
        )

        if created:
            logger.info(
                "Payment event recorded: event=%s user=%s coins=%d reference=%s",
                payment_event.stripe_event_id,
                payment_event.user_id,
                payment_event.coin_amount,
                payment_event.reference_id,
            )
        else:
            logger.info("Duplicate payment event delivery: event=%s", event["id"])
        return payment_event

    @staticmethod
    @transaction.atomic
    def process(event_id: int, ledger=None) -> PaymentEvent:
        """
        Credit the coins for a recorded payment event.

        Returns:
            The updated PaymentEvent (PROCESSED, FAILED or REJECTED).

        Raises:
            PaymentEvent.DoesNotExist: If the event doesn't exist.
        """
        ledger = ledger or CoinLedgerService()
        payment_event = PaymentEvent.objects.select_for_update().get(id=event_id)

        if payment_event.status in (PaymentEvent.Status.PROCESSED, PaymentEvent.Status.REJECTED):
            logger.info(
                "Payment event already settled: event=%s status=%s",
                payment_event.stripe_event_id,
                payment_event.status,
            )
            return payment_event

        try:
            if payment_event.user_id is None:
                raise InvalidParticipants("Invalid user ID in session metadata.")
            tx = ledger.purchase_coins(
                payment_event.user_id,
                payment_event.coin_amount,
                payment_event.reference_id,
            )
        except LedgerValidationError as exc:
            payment_event.status = PaymentEvent.Status.REJECTED
            payment_event.last_error = str(exc)
            payment_event.save(update_fields=["status", "last_error", "updated_at"])
            logger.error(
                "Payment event rejected by the ledger: event=%s error=%s",
                payment_event.stripe_event_id,
                exc,
            )
            return payment_event
        except CoinLedgerError as exc:
            payment_event.status = PaymentEvent.Status.FAILED
            payment_event.retry_count += 1
            payment_event.last_error = str(exc)
            payment_event.save(
                update_fields=["status", "retry_count", "last_error", "updated_at"]
            )
            log = logger.critical if isinstance(exc, SystemWalletMissing) else logger.warning
            log(
                "Coin credit failed for payment: event=%s user=%s coins=%d retry_count=%d error=%s",
                payment_event.stripe_event_id,
                payment_event.user_id,
                payment_event.coin_amount,
                payment_event.retry_count,
                exc,
            )
            return payment_event

        payment_event.status = PaymentEvent.Status.PROCESSED
        payment_event.ledger_transaction_id = tx.id
        payment_event.last_error = ""
        payment_event.save(
            update_fields=["status", "ledger_transaction", "last_error", "updated_at"]
        )
        logger.info(
            "Payment event processed: event=%s user=%s coins=%d tx=%d",
            payment_event.stripe_event_id,
            payment_event.user_id,
            payment_event.coin_amount,
            tx.id,
        )
        return payment_event
