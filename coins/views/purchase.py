import logging

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from coins.serializers import PurchaseSerializer
from coins.services import CoinLedgerService
from coins.utils import create_checkout_session

logger = logging.getLogger(__name__)


class PurchaseView(APIView):
    """
    POST /purchase — Open a Stripe checkout session for buying coins.

    Request body: {"amount": <price>, "coinAmount": <positive integer>}
    Guests may start a checkout. No coins move here: the webhook credits
    them once Stripe confirms the payment.
    """

    permission_classes = [AllowAny]

    def post(self, request, *args, **kwargs):
        serializer = PurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        coin_amount = serializer.validated_data["coinAmount"]

        supply = CoinLedgerService().get_total_supply()
        if supply["minted"] + coin_amount > supply["total"]:
            logger.warning(
                "Checkout refused (supply exhausted): coins=%d minted=%d total=%d",
                coin_amount,
                supply["minted"],
                supply["total"],
            )
            return Response(
                {"error": "Not enough coins available for purchase"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        user_id = request.user.id if request.user.is_authenticated else None
        result = create_checkout_session(
            price_in_cents=serializer.price_in_cents,
            coin_amount=coin_amount,
            user_id=user_id,
        )
        if not result["success"]:
            return Response(
                {"error": "Failed to create checkout session"},
                status=status.HTTP_502_BAD_GATEWAY,
            )

        return Response(
            {
                "sessionId": result["response"]["session_id"],
                "url": result["response"]["url"],
            },
            status=status.HTTP_200_OK,
        )
