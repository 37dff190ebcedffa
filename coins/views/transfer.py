import logging

from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from coins.exceptions import CoinLedgerError
from coins.serializers import GiveCoinsSerializer, TransactionSerializer, TransferSerializer
from coins.services import CoinLedgerService

logger = logging.getLogger(__name__)


class TransferView(APIView):
    """
    POST /transfer — Send coins to another user.

    Request body: {"toUserId": <id>, "amount": <positive integer>, "description": "<optional>"}
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, *args, **kwargs):
        serializer = TransferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            tx = CoinLedgerService().transfer_coins(
                from_user_id=request.user.id,
                to_user_id=serializer.validated_data["toUserId"],
                amount=serializer.validated_data["amount"],
                description=serializer.validated_data["description"],
            )
        except CoinLedgerError as exc:
            logger.warning("Error transferring coins: user=%s error=%s", request.user.id, exc)
            return Response({"error": str(exc)}, status=exc.status_code)

        return Response(
            {"success": True, "transaction": TransactionSerializer(tx).data},
            status=status.HTTP_200_OK,
        )


class GiveCoinsView(APIView):
    """
    POST /give — Administrator grant from the system wallet.

    Request body: {"userId": <id>, "amount": <positive integer>, "reason": "<optional>"}
    """

    permission_classes = [IsAuthenticated, IsAdminUser]

    def post(self, request, *args, **kwargs):
        serializer = GiveCoinsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            tx = CoinLedgerService().give_coins(
                user_id=serializer.validated_data["userId"],
                amount=serializer.validated_data["amount"],
                reason=serializer.validated_data["reason"],
            )
        except CoinLedgerError as exc:
            logger.warning("Error giving coins: admin=%s error=%s", request.user.id, exc)
            return Response({"error": str(exc)}, status=exc.status_code)

        logger.info(
            "Giveaway by admin=%s: user=%s amount=%d tx=%d",
            request.user.id,
            tx.to_user_id,
            tx.amount,
            tx.id,
        )
        return Response(
            {"success": True, "transaction": TransactionSerializer(tx).data},
            status=status.HTTP_200_OK,
        )
