from django.urls import path

from coins.views import (
    BalanceView,
    GiveCoinsView,
    PurchaseView,
    StripeWebhookView,
    SupplyView,
    TransactionHistoryView,
    TransferView,
)

urlpatterns = [
    path("balance", BalanceView.as_view(), name="coins-balance"),
    path("transactions", TransactionHistoryView.as_view(), name="coins-transactions"),
    path("supply", SupplyView.as_view(), name="coins-supply"),
    path("purchase", PurchaseView.as_view(), name="coins-purchase"),
    path("webhook", StripeWebhookView.as_view(), name="coins-webhook"),
    path("transfer", TransferView.as_view(), name="coins-transfer"),
    path("give", GiveCoinsView.as_view(), name="coins-give"),
]
