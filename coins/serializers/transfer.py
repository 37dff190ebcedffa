from rest_framework import serializers


class TransferSerializer(serializers.Serializer):
    """Validates user-to-user transfer requests."""

    toUserId = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    description = serializers.CharField(allow_blank=True, max_length=500, default="")


class GiveCoinsSerializer(serializers.Serializer):
    """Validates administrator giveaway requests."""

    userId = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(allow_blank=True, max_length=500, default="")
