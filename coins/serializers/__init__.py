from coins.serializers.transaction import (
    TransactionHistoryQuerySerializer,
    TransactionSerializer,
)
from coins.serializers.transfer import GiveCoinsSerializer, TransferSerializer
from coins.serializers.purchase import PurchaseSerializer

__all__ = [
    "TransactionSerializer",
    "TransactionHistoryQuerySerializer",
    "TransferSerializer",
    "GiveCoinsSerializer",
    "PurchaseSerializer",
]
