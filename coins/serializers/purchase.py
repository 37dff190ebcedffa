from decimal import ROUND_HALF_UP, Decimal

from rest_framework import serializers


class PurchaseSerializer(serializers.Serializer):
    """
    Validates checkout requests.

    ``amount`` is the price in major currency units (e.g. dollars) and
    ``coinAmount`` the number of coins bought for it.
    """

    amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0.01")
    )
    coinAmount = serializers.IntegerField(min_value=1)

    @property
    def price_in_cents(self):
        amount = self.validated_data["amount"]
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
