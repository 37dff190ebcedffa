from coins.services.ledger import CoinLedgerService
from coins.services.payment_event import PaymentEventService

__all__ = ["CoinLedgerService", "PaymentEventService"]
