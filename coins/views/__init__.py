from coins.views.balance import BalanceView, SupplyView
from coins.views.transaction import TransactionHistoryView
from coins.views.purchase import PurchaseView
from coins.views.webhook import StripeWebhookView
from coins.views.transfer import GiveCoinsView, TransferView

__all__ = [
    "BalanceView",
    "SupplyView",
    "TransactionHistoryView",
    "PurchaseView",
    "StripeWebhookView",
    "TransferView",
    "GiveCoinsView",
]
