import logging

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)

# Configurable via Django settings with sensible defaults
STRIPE_SECRET_KEY = getattr(settings, "STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
STRIPE_CURRENCY = getattr(settings, "STRIPE_CURRENCY", "usd")
CLIENT_URL = getattr(settings, "CLIENT_URL", "http://localhost:3003").rstrip("/")


def create_checkout_session(price_in_cents: int, coin_amount: int, user_id=None) -> dict:
    """
    Open a Stripe Checkout session selling ``coin_amount`` coins.

    The coins are not credited here: the webhook credits them once Stripe
    reports the session as completed. Returns a structured result dict for
    consistent downstream handling.

    Args:
        price_in_cents: Price charged, in the smallest currency unit.
        coin_amount: Coins to credit once the payment completes.
        user_id: Buyer, when authenticated. Carried in the session metadata.

    Returns:
        dict with keys:
            - success (bool): Whether Stripe created the session.
            - response (dict): ``session_id`` and ``url``, or error details.
    """
    metadata = {"coinAmount": str(coin_amount)}
    if user_id is not None:
        metadata["userId"] = str(user_id)

    try:
        session = stripe.checkout.Session.create(
            api_key=STRIPE_SECRET_KEY,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": STRIPE_CURRENCY,
                        "product_data": {
                            "name": f"{coin_amount} DasWos Coins",
                            "description": "Digital currency for the DasWos platform",
                        },
                        "unit_amount": price_in_cents,
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{CLIENT_URL}/daswos-coins/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{CLIENT_URL}/daswos-coins/cancel",
            metadata=metadata,
        )
    except stripe.StripeError as exc:
        logger.error(
            "Stripe checkout session failed: user=%s coins=%d error=%s",
            user_id,
            coin_amount,
            str(exc),
        )
        return {
            "success": False,
            "response": {"error": "stripe_error", "detail": str(exc)},
        }

    logger.info(
        "Stripe checkout session created: session=%s user=%s coins=%d price=%d",
        session.id,
        user_id,
        coin_amount,
        price_in_cents,
    )
    return {"success": True, "response": {"session_id": session.id, "url": session.url}}


def construct_webhook_event(payload: bytes, sig_header: str) -> dict:
    """
    Verify a webhook delivery's signature and decode its event.

    The event is returned as a plain dict so it can be stored as JSON.

    Raises:
        stripe.SignatureVerificationError: If the signature doesn't match.
        ValueError: If the payload is not valid JSON.
    """
    event = stripe.Webhook.construct_event(
        payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET
    )
    return event.to_dict()
