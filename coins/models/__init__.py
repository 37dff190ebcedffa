from coins.models.base import BaseModel
from coins.models.wallet import Wallet
from coins.models.transaction import Transaction
from coins.models.supply import SupplyLedger
from coins.models.payment_event import PaymentEvent

__all__ = [
    "BaseModel",
    "Wallet",
    "Transaction",
    "SupplyLedger",
    "PaymentEvent",
]
