from rest_framework import serializers


class TransactionSerializer(serializers.Serializer):
    """
    Read-only serializer for ledger transaction responses.

    Declared field by field rather than as a ModelSerializer so it renders
    records from any ledger store, not only ORM rows.
    """

    id = serializers.IntegerField(read_only=True)
    fromUserId = serializers.IntegerField(source="from_user_id", read_only=True)
    toUserId = serializers.IntegerField(source="to_user_id", read_only=True)
    amount = serializers.IntegerField(read_only=True)
    transactionType = serializers.CharField(source="transaction_type", read_only=True)
    timestamp = serializers.DateTimeField(read_only=True)
    referenceId = serializers.CharField(source="reference_id", read_only=True, allow_null=True)
    description = serializers.CharField(read_only=True)


class TransactionHistoryQuerySerializer(serializers.Serializer):
    """Validates the pagination query of the history endpoint."""

    limit = serializers.IntegerField(min_value=1, default=10)
    offset = serializers.IntegerField(min_value=0, default=0)

    def __init__(self, *args, max_limit=100, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_limit = max_limit

    def validate_limit(self, value):
        if value > self.max_limit:
            raise serializers.ValidationError(f"Limit may not exceed {self.max_limit}.")
        return value
