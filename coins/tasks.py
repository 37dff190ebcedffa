import logging

from celery import shared_task
from django.conf import settings

from coins.models import PaymentEvent
from coins.services import PaymentEventService

logger = logging.getLogger(__name__)

MAX_RETRIES = getattr(settings, "PAYMENT_EVENT_MAX_RETRIES", 5)
PENDING_GRACE_SECONDS = getattr(settings, "PAYMENT_EVENT_PENDING_GRACE_SECONDS", 300)


@shared_task(bind=True, acks_late=True, max_retries=3, default_retry_delay=30)
def process_payment_event(self, event_id: int):
    """
    Credit the coins for a single recorded payment event.

    Uses acks_late=True so the task won't be acknowledged until it completes,
    preventing a confirmed payment from being dropped if the worker crashes.
    """
    try:
        logger.info("Processing payment event id=%d", event_id)
        payment_event = PaymentEventService.process(event_id)

        if payment_event.status == PaymentEvent.Status.PROCESSED:
            logger.info("Payment event id=%d credited.", event_id)
        else:
            logger.warning(
                "Payment event id=%d not credited: %s %s",
                event_id,
                payment_event.status,
                payment_event.last_error,
            )

        return {"event_id": event_id, "status": payment_event.status}

    except PaymentEvent.DoesNotExist:
        logger.error("Payment event %d not found.", event_id)
        return {"event_id": event_id, "status": "NOT_FOUND"}

    except Exception as exc:
        logger.exception("Unexpected error processing payment event id=%d: %s", event_id, str(exc))
        raise self.retry(exc=exc, countdown=2**self.request.retries * 10)


@shared_task
def retry_failed_payment_events():
    """
    Periodic task: re-dispatch payment events whose coin credit failed, or
    that were recorded but never processed.

    Events are retried up to MAX_RETRIES times; after that they need manual
    reconciliation (visible in the admin with their last error).
    """
    retryable_events = PaymentEvent.get_retryable(
        max_retries=MAX_RETRIES, pending_grace_seconds=PENDING_GRACE_SECONDS
    )
    count = retryable_events.count()

    if count == 0:
        return {"dispatched": 0}

    logger.info("Found %d payment event(s) eligible for retry.", count)

    for payment_event in retryable_events:
        process_payment_event.delay(payment_event.id)

    return {"dispatched": count}
