from coins.utils.stripe_gateway import construct_webhook_event, create_checkout_session

__all__ = ["create_checkout_session", "construct_webhook_event"]
