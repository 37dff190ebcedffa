import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from coins.exceptions import CoinLedgerError
from coins.services import CoinLedgerService

logger = logging.getLogger(__name__)


class BalanceView(APIView):
    """GET /balance — The authenticated user's coin balance."""

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        try:
            balance = CoinLedgerService().get_user_balance(request.user.id)
        except CoinLedgerError as exc:
            logger.error("Error getting coin balance: user=%s error=%s", request.user.id, exc)
            return Response({"error": str(exc)}, status=exc.status_code)

        return Response({"balance": balance}, status=status.HTTP_200_OK)


class SupplyView(APIView):
    """GET /supply — Total and minted coin supply."""

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        return Response(CoinLedgerService().get_total_supply(), status=status.HTTP_200_OK)
