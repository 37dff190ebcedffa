import logging

import stripe
from django.db import DatabaseError
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from coins.services import PaymentEventService
from coins.services.payment_event import CHECKOUT_COMPLETED, MissingPaymentUser
from coins.utils import construct_webhook_event

logger = logging.getLogger(__name__)


class StripeWebhookView(APIView):
    """
    POST /webhook — Stripe event delivery.

    A completed checkout is persisted as a PaymentEvent before it is
    acknowledged, then credited. A failed credit is logged and left for the
    reconciliation task; the delivery is still acknowledged so Stripe does
    not redeliver an event the system already holds.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request, *args, **kwargs):
        try:
            event = construct_webhook_event(
                request.body, request.META.get("HTTP_STRIPE_SIGNATURE")
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            return Response(
                {"error": f"Webhook Error: {exc}"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        if event.get("type") != CHECKOUT_COMPLETED:
            logger.info("Ignoring Stripe event: id=%s type=%s", event.get("id"), event.get("type"))
            return Response({"received": True}, status=status.HTTP_200_OK)

        try:
            payment_event = PaymentEventService.record(event)
        except MissingPaymentUser as exc:
            logger.error("Checkout completed without a user: event=%s", event.get("id"))
            return Response({"error": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        try:
            PaymentEventService.process(payment_event.id)
        except DatabaseError:
            logger.exception(
                "Error processing coin purchase: event=%s; left for reconciliation",
                payment_event.stripe_event_id,
            )

        return Response({"received": True}, status=status.HTTP_200_OK)
