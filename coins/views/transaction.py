import logging

from django.conf import settings
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from coins.exceptions import CoinLedgerError
from coins.serializers import TransactionHistoryQuerySerializer, TransactionSerializer
from coins.services import CoinLedgerService

logger = logging.getLogger(__name__)


class TransactionHistoryView(APIView):
    """
    GET /transactions — The authenticated user's transactions, newest first.

    Query params:
        - limit: Page size (default 10, at most COINS_HISTORY_MAX_LIMIT)
        - offset: Number of transactions to skip (default 0)
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        query = TransactionHistoryQuerySerializer(
            data=request.query_params,
            max_limit=getattr(settings, "COINS_HISTORY_MAX_LIMIT", 100),
        )
        query.is_valid(raise_exception=True)

        try:
            transactions = CoinLedgerService().get_user_transaction_history(
                request.user.id,
                limit=query.validated_data["limit"],
                offset=query.validated_data["offset"],
            )
        except CoinLedgerError as exc:
            logger.error("Error getting transaction history: user=%s error=%s", request.user.id, exc)
            return Response({"error": str(exc)}, status=exc.status_code)

        return Response(
            {"transactions": TransactionSerializer(transactions, many=True).data},
            status=status.HTTP_200_OK,
        )
