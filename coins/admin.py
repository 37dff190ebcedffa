from django.contrib import admin

from coins.models import PaymentEvent, SupplyLedger, Transaction, Wallet


class ReadOnlyAdminMixin:
    """
    Mixin that makes an admin model completely read-only.

    Balances change only through the coin ledger service, so the admin is
    for inspection and manual reconciliation, never for edits.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("user_id", "balance", "created_at", "updated_at")
    search_fields = ("user_id",)
    readonly_fields = ("user_id", "balance", "created_at", "updated_at")


@admin.register(Transaction)
class TransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "transaction_type",
        "from_user_id",
        "to_user_id",
        "amount",
        "reference_id",
        "timestamp",
    )
    list_filter = ("transaction_type",)
    search_fields = ("from_user_id", "to_user_id", "reference_id")
    readonly_fields = (
        "from_user_id",
        "to_user_id",
        "amount",
        "transaction_type",
        "timestamp",
        "reference_id",
        "description",
    )


@admin.register(SupplyLedger)
class SupplyLedgerAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "total_amount", "minted_amount", "created_at")
    readonly_fields = ("total_amount", "minted_amount", "created_at", "updated_at")


@admin.register(PaymentEvent)
class PaymentEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "stripe_event_id",
        "user_id",
        "coin_amount",
        "status",
        "retry_count",
        "created_at",
    )
    list_filter = ("status",)
    search_fields = ("stripe_event_id", "reference_id", "user_id")
    readonly_fields = (
        "stripe_event_id",
        "event_type",
        "user_id",
        "coin_amount",
        "reference_id",
        "payload",
        "status",
        "retry_count",
        "last_error",
        "ledger_transaction",
        "created_at",
        "updated_at",
    )
