from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from coins.constants import SYSTEM_USER_ID
from coins.models import SupplyLedger, Wallet


class Command(BaseCommand):
    help = "Creates the coin supply ledger and the funded system wallet if missing"

    def add_arguments(self, parser):
        parser.add_argument(
            "--total",
            type=int,
            default=getattr(settings, "COINS_INITIAL_SUPPLY", 1_000_000_000),
            help="Total coin supply, also the system wallet's opening balance.",
        )

    def handle(self, *args, **options):
        total = options["total"]
        if total <= 0:
            raise CommandError("--total must be a positive integer.")

        with transaction.atomic():
            supply = SupplyLedger.objects.select_for_update().order_by("id").first()
            if supply is None:
                SupplyLedger.objects.create(total_amount=total)
                self.stdout.write(self.style.SUCCESS(f"Supply ledger created: total={total}"))
            else:
                self.stdout.write(f"Supply ledger exists: total={supply.total_amount}")

            wallet, created = Wallet.objects.get_or_create(
                user_id=SYSTEM_USER_ID, defaults={"balance": total}
            )
            if created:
                self.stdout.write(
                    self.style.SUCCESS(f"System wallet created: balance={wallet.balance}")
                )
            else:
                self.stdout.write(f"System wallet exists: balance={wallet.balance}")
