from django.core.checks import Error, Tags, Warning, register
from django.db import DatabaseError

from coins.constants import SYSTEM_USER_ID


@register(Tags.database, deploy=True)
def check_coin_ledger_provisioned(app_configs=None, databases=None, **kwargs):
    """
    Surface a missing system wallet at startup instead of on the first purchase.

    A deployment check: runs with ``manage.py check --deploy --database default``.
    """
    from coins.models import SupplyLedger, Wallet

    messages = []
    for alias in databases or []:
        try:
            has_wallet = Wallet.objects.using(alias).filter(user_id=SYSTEM_USER_ID).exists()
            has_supply = SupplyLedger.objects.using(alias).exists()
        except DatabaseError:
            # Tables not created yet.
            continue

        if not has_wallet:
            messages.append(
                Error(
                    f"The system wallet (user_id={SYSTEM_USER_ID}) is missing in database '{alias}'.",
                    hint="Run `manage.py provision_coins`.",
                    id="coins.E001",
                )
            )
        if not has_supply:
            messages.append(
                Warning(
                    f"The coin supply ledger is missing in database '{alias}'; "
                    "every checkout will be refused.",
                    hint="Run `manage.py provision_coins`.",
                    id="coins.W001",
                )
            )
    return messages
