import dataclasses
import hashlib
import hmac
import json
import random
import threading
import time
from datetime import timedelta
from io import StringIO
from unittest.mock import MagicMock, patch

import stripe
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIClient

from coins.checks import check_coin_ledger_provisioned
from coins.constants import SYSTEM_USER_ID
from coins.exceptions import (
    CoinLedgerError,
    ImmutableRecordError,
    InsufficientBalance,
    InsufficientSystemFunds,
    InvalidAmount,
    InvalidParticipants,
    LedgerStoreError,
    LedgerTimeout,
    SenderWalletNotFound,
    SystemWalletMissing,
)
from coins.models import PaymentEvent, SupplyLedger, Transaction, Wallet
from coins.services import CoinLedgerService, PaymentEventService
from coins.stores import DjangoLedgerStore, InMemoryLedgerStore
from coins.stores.memory import SupplyRecord
from coins.utils.stripe_gateway import construct_webhook_event, create_checkout_session

User = get_user_model()

API = "/api/daswos-coins"


def checkout_event(event_id="evt_1", user_id=42, coin_amount=300, payment_intent="pi_abc"):
    metadata = {"coinAmount": str(coin_amount)}
    if user_id is not None:
        metadata["userId"] = str(user_id)
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_intent": payment_intent,
                "metadata": metadata,
            }
        },
    }


# ============================================================
# Model Tests
# ============================================================


class WalletModelTest(TestCase):
    def test_create_wallet(self):
        wallet = Wallet.objects.create(user_id=42)
        self.assertEqual(wallet.balance, 0)
        self.assertIsNotNone(wallet.last_updated)
        self.assertFalse(wallet.is_system)

    def test_wallet_str(self):
        wallet = Wallet.objects.create(user_id=42, balance=7)
        self.assertIn("42", str(wallet))
        self.assertIn("7", str(wallet))

    def test_user_id_is_unique(self):
        Wallet.objects.create(user_id=42)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Wallet.objects.create(user_id=42)

    def test_negative_balance_rejected_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Wallet.objects.create(user_id=42, balance=-1)


class TransactionModelTest(TestCase):
    def setUp(self):
        self.tx = Transaction.objects.create(
            from_user_id=SYSTEM_USER_ID,
            to_user_id=42,
            amount=300,
            transaction_type=Transaction.TransactionType.PURCHASE,
            reference_id="pi_abc",
        )

    def test_transaction_str(self):
        self.assertIn("PURCHASE", str(self.tx))
        self.assertIn("300", str(self.tx))

    def test_saving_existing_transaction_raises(self):
        self.tx.amount = 1
        with self.assertRaises(ImmutableRecordError):
            self.tx.save()
        self.assertEqual(Transaction.objects.get(pk=self.tx.pk).amount, 300)

    def test_deleting_transaction_raises(self):
        with self.assertRaises(ImmutableRecordError):
            self.tx.delete()
        with self.assertRaises(ImmutableRecordError):
            Transaction.objects.all().delete()
        self.assertEqual(Transaction.objects.count(), 1)

    def test_queryset_update_raises(self):
        with self.assertRaises(ImmutableRecordError):
            Transaction.objects.filter(pk=self.tx.pk).update(amount=1)

    def test_non_positive_amount_rejected_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Transaction.objects.create(
                    from_user_id=1,
                    to_user_id=2,
                    amount=0,
                    transaction_type=Transaction.TransactionType.TRANSFER,
                )

    def test_for_user_matches_either_side(self):
        Transaction.objects.create(
            from_user_id=42,
            to_user_id=7,
            amount=10,
            transaction_type=Transaction.TransactionType.TRANSFER,
        )
        Transaction.objects.create(
            from_user_id=7,
            to_user_id=8,
            amount=10,
            transaction_type=Transaction.TransactionType.TRANSFER,
        )
        self.assertEqual(Transaction.for_user(42).count(), 2)
        self.assertEqual(Transaction.for_user(8).count(), 1)


class SupplyLedgerModelTest(TestCase):
    def test_current_returns_first_row(self):
        self.assertIsNone(SupplyLedger.current())
        supply = SupplyLedger.objects.create(total_amount=1000)
        self.assertEqual(SupplyLedger.current(), supply)
        self.assertEqual(supply.minted_amount, 0)

    def test_minted_above_total_rejected_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                SupplyLedger.objects.create(total_amount=10, minted_amount=11)


class PaymentEventModelTest(TestCase):
    def _event(self, event_id, status, retry_count=0):
        return PaymentEvent.objects.create(
            stripe_event_id=event_id,
            event_type="checkout.session.completed",
            user_id=42,
            coin_amount=100,
            reference_id=f"pi_{event_id}",
            status=status,
            retry_count=retry_count,
        )

    def test_get_retryable(self):
        retryable = self._event("evt_a", PaymentEvent.Status.FAILED, retry_count=1)
        self._event("evt_b", PaymentEvent.Status.FAILED, retry_count=5)
        self._event("evt_c", PaymentEvent.Status.PROCESSED)
        self._event("evt_d", PaymentEvent.Status.REJECTED)

        events = PaymentEvent.get_retryable(max_retries=5)
        self.assertEqual(events.count(), 1)
        self.assertEqual(events.first().id, retryable.id)

    def test_get_retryable_includes_stale_pending(self):
        stale = self._event("evt_stale", PaymentEvent.Status.PENDING)
        self._event("evt_fresh", PaymentEvent.Status.PENDING)
        PaymentEvent.objects.filter(id=stale.id).update(
            created_at=timezone.now() - timedelta(minutes=10)
        )

        events = PaymentEvent.get_retryable(max_retries=5, pending_grace_seconds=300)

        self.assertEqual([event.id for event in events], [stale.id])


# ============================================================
# In-Memory Store Tests
# ============================================================


class InMemoryLedgerStoreTest(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryLedgerStore(timeout_ms=1000)

    def test_rollback_restores_wallets_and_log(self):
        self.store.seed_wallet(1, 100)

        def failing():
            self.store.set_balance(1, 0)
            self.store.create_wallet(2)
            self.store.append_transaction(1, 2, 100, Transaction.TransactionType.TRANSFER)
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.store.run_in_transaction(failing)

        self.assertEqual(self.store.get_wallet(1).balance, 100)
        self.assertIsNone(self.store.get_wallet(2))
        self.assertEqual(self.store.transactions, [])

    def test_ids_are_not_reused_after_rollback(self):
        self.store.seed_wallet(1, 100)

        def append():
            return self.store.append_transaction(1, 2, 5, Transaction.TransactionType.TRANSFER)

        first = self.store.run_in_transaction(append)

        def append_and_fail():
            append()
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.store.run_in_transaction(append_and_fail)
        second = self.store.run_in_transaction(append)

        self.assertEqual(first.id, 1)
        self.assertEqual(second.id, 2)

    def test_mutation_outside_transaction_raises(self):
        self.store.seed_wallet(1, 100)
        with self.assertRaises(LedgerStoreError):
            self.store.set_balance(1, 50)
        with self.assertRaises(LedgerStoreError):
            self.store.create_wallet(2)

    def test_negative_balance_rejected(self):
        self.store.seed_wallet(1, 100)
        with self.assertRaises(LedgerStoreError):
            self.store.run_in_transaction(lambda: self.store.set_balance(1, -1))
        self.assertEqual(self.store.get_wallet(1).balance, 100)

    def test_nested_transaction_joins_outer(self):
        self.store.seed_wallet(1, 100)

        def outer():
            self.store.run_in_transaction(lambda: self.store.set_balance(1, 10))
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.store.run_in_transaction(outer)
        self.assertEqual(self.store.get_wallet(1).balance, 100)

    def test_lock_wait_is_bounded(self):
        store = InMemoryLedgerStore(timeout_ms=50)
        entered = threading.Event()
        release = threading.Event()

        def hold():
            store.run_in_transaction(lambda: (entered.set(), release.wait(5)))

        holder = threading.Thread(target=hold)
        holder.start()
        entered.wait(5)
        try:
            with self.assertRaises(LedgerTimeout):
                store.run_in_transaction(lambda: None)
        finally:
            release.set()
            holder.join()

    def test_records_are_immutable(self):
        self.store.seed_wallet(1, 100)
        tx = self.store.run_in_transaction(
            lambda: self.store.append_transaction(1, 2, 5, Transaction.TransactionType.TRANSFER)
        )
        with self.assertRaises(dataclasses.FrozenInstanceError):
            tx.amount = 1


# ============================================================
# Service Tests
# ============================================================


class LedgerScenarioMixin:
    """Ledger behavior shared by every store. Subclasses provide the fixtures."""

    def make_service(self):
        raise NotImplementedError

    def seed(self, user_id, balance):
        raise NotImplementedError

    def seed_supply(self, total, minted):
        raise NotImplementedError

    def balance_of(self, user_id):
        """Stored balance, or None when the wallet doesn't exist."""
        raise NotImplementedError

    def transaction_count(self):
        raise NotImplementedError

    def setUp(self):
        self.service = self.make_service()

    def test_balance_of_new_user_creates_empty_wallet(self):
        self.assertEqual(self.service.get_user_balance(42), 0)
        self.assertEqual(self.balance_of(42), 0)
        self.assertEqual(self.service.get_user_balance(42), 0)
        self.assertEqual(self.transaction_count(), 0)

    def test_balance_of_existing_wallet(self):
        self.seed(42, 250)
        self.assertEqual(self.service.get_user_balance(42), 250)

    def test_purchase_moves_coins_from_system_wallet(self):
        self.seed(SYSTEM_USER_ID, 1000)

        tx = self.service.purchase_coins(42, 300, "pi_abc")

        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 700)
        self.assertEqual(self.balance_of(42), 300)
        self.assertEqual(tx.transaction_type, Transaction.TransactionType.PURCHASE)
        self.assertEqual(tx.from_user_id, SYSTEM_USER_ID)
        self.assertEqual(tx.to_user_id, 42)
        self.assertEqual(tx.amount, 300)
        self.assertEqual(tx.reference_id, "pi_abc")
        self.assertEqual(tx.description, "Purchase via Stripe")
        self.assertEqual(self.transaction_count(), 1)

    def test_purchase_adds_to_existing_balance(self):
        self.seed(SYSTEM_USER_ID, 1000)
        self.seed(42, 5)
        self.service.purchase_coins(42, 300, "pi_abc")
        self.assertEqual(self.balance_of(42), 305)

    def test_purchase_with_insufficient_system_funds(self):
        self.seed(SYSTEM_USER_ID, 50)

        with self.assertRaises(InsufficientSystemFunds):
            self.service.purchase_coins(42, 300, "pi_x")

        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 50)
        self.assertIsNone(self.balance_of(42))
        self.assertEqual(self.transaction_count(), 0)

    def test_purchase_without_system_wallet(self):
        with self.assertRaises(SystemWalletMissing):
            self.service.purchase_coins(42, 300, "pi_x")
        self.assertIsNone(self.balance_of(42))

    def test_purchase_requires_payment_reference(self):
        self.seed(SYSTEM_USER_ID, 1000)
        with self.assertRaises(InvalidParticipants):
            self.service.purchase_coins(42, 300, "")

    def test_purchase_into_system_wallet_rejected(self):
        self.seed(SYSTEM_USER_ID, 1000)
        with self.assertRaises(InvalidParticipants):
            self.service.purchase_coins(SYSTEM_USER_ID, 300, "pi_x")
        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 1000)

    def test_give_moves_coins_without_reference(self):
        self.seed(SYSTEM_USER_ID, 1000)

        tx = self.service.give_coins(42, 25, "Contest winner")

        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 975)
        self.assertEqual(self.balance_of(42), 25)
        self.assertEqual(tx.transaction_type, Transaction.TransactionType.GIVEAWAY)
        self.assertIsNone(tx.reference_id)
        self.assertEqual(tx.description, "Contest winner")

    def test_give_default_reason(self):
        self.seed(SYSTEM_USER_ID, 1000)
        tx = self.service.give_coins(42, 25)
        self.assertEqual(tx.description, "Admin giveaway")

    def test_give_with_insufficient_system_funds(self):
        self.seed(SYSTEM_USER_ID, 10)
        with self.assertRaises(InsufficientSystemFunds):
            self.service.give_coins(42, 25)
        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 10)
        self.assertEqual(self.transaction_count(), 0)

    def test_transfer_creates_recipient_wallet(self):
        self.seed(1, 100)

        tx = self.service.transfer_coins(1, 2, 40, "gift")

        self.assertEqual(self.balance_of(1), 60)
        self.assertEqual(self.balance_of(2), 40)
        self.assertEqual(tx.transaction_type, Transaction.TransactionType.TRANSFER)
        self.assertEqual(tx.from_user_id, 1)
        self.assertEqual(tx.to_user_id, 2)
        self.assertEqual(tx.description, "gift")
        self.assertIsNone(tx.reference_id)
        self.assertEqual(self.transaction_count(), 1)

    def test_transfer_to_lower_user_id(self):
        self.seed(7, 100)
        self.seed(3, 1)
        self.service.transfer_coins(7, 3, 100)
        self.assertEqual(self.balance_of(7), 0)
        self.assertEqual(self.balance_of(3), 101)

    def test_transfer_default_description(self):
        self.seed(1, 100)
        tx = self.service.transfer_coins(1, 2, 40)
        self.assertEqual(tx.description, "User transfer")

    def test_transfer_with_insufficient_balance(self):
        self.seed(1, 10)

        with self.assertRaises(InsufficientBalance):
            self.service.transfer_coins(1, 2, 40, "gift")

        self.assertEqual(self.balance_of(1), 10)
        self.assertIsNone(self.balance_of(2))
        self.assertEqual(self.transaction_count(), 0)

    def test_transfer_from_missing_wallet(self):
        with self.assertRaises(SenderWalletNotFound):
            self.service.transfer_coins(1, 2, 40)
        self.assertIsNone(self.balance_of(2))

    def test_transfer_to_self_rejected(self):
        self.seed(1, 100)
        with self.assertRaises(InvalidParticipants):
            self.service.transfer_coins(1, 1, 40)
        self.assertEqual(self.balance_of(1), 100)

    def test_transfer_involving_system_wallet_rejected(self):
        self.seed(SYSTEM_USER_ID, 1000)
        self.seed(1, 100)
        with self.assertRaises(InvalidParticipants):
            self.service.transfer_coins(SYSTEM_USER_ID, 1, 40)
        with self.assertRaises(InvalidParticipants):
            self.service.transfer_coins(1, SYSTEM_USER_ID, 40)

    def test_non_positive_or_non_integer_amounts_rejected(self):
        self.seed(SYSTEM_USER_ID, 1000)
        self.seed(1, 100)
        for amount in (0, -5, True, 1.5, "10", None):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.service.purchase_coins(1, amount, "pi_x")
                with self.assertRaises(InvalidAmount):
                    self.service.give_coins(1, amount)
                with self.assertRaises(InvalidAmount):
                    self.service.transfer_coins(1, 2, amount)

        self.assertEqual(self.balance_of(SYSTEM_USER_ID), 1000)
        self.assertEqual(self.balance_of(1), 100)
        self.assertEqual(self.transaction_count(), 0)

    def test_total_supply_uninitialized(self):
        self.assertEqual(self.service.get_total_supply(), {"total": 0, "minted": 0})

    def test_total_supply(self):
        self.seed_supply(1000, 10)
        self.assertEqual(self.service.get_total_supply(), {"total": 1000, "minted": 10})

    def test_supply_is_not_updated_by_purchases(self):
        self.seed_supply(1000, 0)
        self.seed(SYSTEM_USER_ID, 1000)
        self.service.purchase_coins(42, 300, "pi_abc")
        self.assertEqual(self.service.get_total_supply(), {"total": 1000, "minted": 0})

    def test_history_only_includes_user_newest_first(self):
        self.seed(SYSTEM_USER_ID, 1000)
        self.service.purchase_coins(1, 100, "pi_1")
        self.service.give_coins(2, 50)
        self.service.transfer_coins(1, 2, 30)
        self.service.transfer_coins(2, 3, 10)

        history = self.service.get_user_transaction_history(1)

        self.assertEqual(len(history), 2)
        for tx in history:
            self.assertIn(1, (tx.from_user_id, tx.to_user_id))
        ids = [tx.id for tx in history]
        self.assertEqual(ids, sorted(ids, reverse=True))
        self.assertEqual(history[0].transaction_type, Transaction.TransactionType.TRANSFER)

    def test_history_pagination(self):
        self.seed(SYSTEM_USER_ID, 1000)
        created = [self.service.give_coins(1, amount) for amount in range(1, 6)]

        page = self.service.get_user_transaction_history(1, limit=2, offset=1)

        self.assertEqual([tx.id for tx in page], [created[3].id, created[2].id])
        self.assertEqual(len(self.service.get_user_transaction_history(1)), 5)
        self.assertEqual(self.service.get_user_transaction_history(1, limit=10, offset=5), [])

    def test_check_provisioned(self):
        with self.assertRaises(SystemWalletMissing):
            self.service.check_provisioned()
        self.seed(SYSTEM_USER_ID, 1000)
        self.service.check_provisioned()


class InMemoryLedgerServiceTest(LedgerScenarioMixin, SimpleTestCase):
    def make_service(self):
        self.store = InMemoryLedgerStore()
        return CoinLedgerService(store=self.store)

    def seed(self, user_id, balance):
        self.store.seed_wallet(user_id, balance)

    def seed_supply(self, total, minted):
        self.store.supply = SupplyRecord(total_amount=total, minted_amount=minted)

    def balance_of(self, user_id):
        wallet = self.store.wallets.get(user_id)
        return None if wallet is None else wallet.balance

    def transaction_count(self):
        return len(self.store.transactions)


class DjangoLedgerServiceTest(LedgerScenarioMixin, TestCase):
    def make_service(self):
        return CoinLedgerService(store=DjangoLedgerStore())

    def seed(self, user_id, balance):
        Wallet.objects.create(user_id=user_id, balance=balance)

    def seed_supply(self, total, minted):
        SupplyLedger.objects.create(total_amount=total, minted_amount=minted)

    def balance_of(self, user_id):
        wallet = Wallet.objects.filter(user_id=user_id).first()
        return None if wallet is None else wallet.balance

    def transaction_count(self):
        return Transaction.objects.count()

    def test_default_store_is_orm(self):
        self.assertIsInstance(CoinLedgerService().store, DjangoLedgerStore)

    def test_balance_twice_creates_one_wallet(self):
        self.service.get_user_balance(42)
        self.service.get_user_balance(42)
        self.assertEqual(Wallet.objects.filter(user_id=42).count(), 1)

    def test_balance_update_touches_last_updated(self):
        self.seed(1, 100)
        before = Wallet.objects.get(user_id=1).last_updated
        self.service.transfer_coins(1, 2, 10)
        self.assertGreaterEqual(Wallet.objects.get(user_id=1).last_updated, before)


class DjangoLedgerStoreTest(TestCase):
    def test_database_error_surfaces_as_store_error(self):
        store = DjangoLedgerStore()

        def failing():
            raise DatabaseError("connection lost")

        with self.assertRaises(LedgerStoreError) as ctx:
            store.run_in_transaction(failing)
        self.assertNotIsInstance(ctx.exception, LedgerTimeout)

    def test_cancelled_statement_surfaces_as_timeout(self):
        class QueryCanceled(Exception):
            pgcode = "57014"

        store = DjangoLedgerStore()

        def failing():
            raise OperationalError("canceling statement due to statement timeout") from QueryCanceled()

        with self.assertRaises(LedgerTimeout):
            store.run_in_transaction(failing)

    def test_domain_errors_pass_through(self):
        store = DjangoLedgerStore()

        def failing():
            raise InsufficientBalance()

        with self.assertRaises(InsufficientBalance):
            store.run_in_transaction(failing)

    def test_create_wallet_returns_existing(self):
        store = DjangoLedgerStore()
        Wallet.objects.create(user_id=5, balance=9)
        wallet = store.run_in_transaction(lambda: store.create_wallet(5))
        self.assertEqual(wallet.balance, 9)
        self.assertEqual(Wallet.objects.filter(user_id=5).count(), 1)


# ============================================================
# Invariant Tests
# ============================================================


class LedgerInvariantTest(SimpleTestCase):
    """Random operation sequences against the in-memory store."""

    USERS = [1, 2, 3, 4, 5]
    SUPPLY = 10_000

    def test_random_operations_preserve_invariants(self):
        rng = random.Random(1234)
        store = InMemoryLedgerStore()
        store.seed_wallet(SYSTEM_USER_ID, self.SUPPLY)
        service = CoinLedgerService(store=store)
        committed = []

        for step in range(400):
            op = rng.choice(["purchase", "give", "transfer", "balance"])
            amount = rng.randint(-5, 600)
            before = {uid: w.balance for uid, w in store.wallets.items()}
            try:
                if op == "purchase":
                    user = rng.choice(self.USERS)
                    tx = service.purchase_coins(user, amount, f"pi_{step}")
                elif op == "give":
                    user = rng.choice(self.USERS)
                    tx = service.give_coins(user, amount)
                elif op == "transfer":
                    sender, recipient = rng.choice(self.USERS), rng.choice(self.USERS)
                    tx = service.transfer_coins(sender, recipient, amount)
                else:
                    service.get_user_balance(rng.choice(self.USERS))
                    tx = None
            except (InvalidAmount, InvalidParticipants, InsufficientBalance,
                    InsufficientSystemFunds, SenderWalletNotFound):
                tx = None
                after = {uid: w.balance for uid, w in store.wallets.items()}
                self.assertEqual(after, before)

            if tx is not None:
                committed.append(tx)
                after = {uid: w.balance for uid, w in store.wallets.items()}
                self.assertEqual(after[tx.from_user_id], before[tx.from_user_id] - tx.amount)
                self.assertEqual(
                    after[tx.to_user_id], before.get(tx.to_user_id, 0) + tx.amount
                )

            balances = [w.balance for w in store.wallets.values()]
            self.assertTrue(all(balance >= 0 for balance in balances))
            self.assertEqual(sum(balances), self.SUPPLY)
            self.assertEqual(store.transactions, committed)

        self.assertTrue(committed)
        for user in self.USERS:
            history = service.get_user_transaction_history(user, limit=1000)
            self.assertTrue(all(user in (tx.from_user_id, tx.to_user_id) for tx in history))
            keys = [(tx.timestamp, tx.id) for tx in history]
            self.assertEqual(keys, sorted(keys, reverse=True))


# ============================================================
# Concurrency Tests
# ============================================================


class InMemoryConcurrencyTest(SimpleTestCase):
    def test_concurrent_transfers_cannot_overdraw(self):
        store = InMemoryLedgerStore()
        store.seed_wallet(1, 50)
        service = CoinLedgerService(store=store)
        barrier = threading.Barrier(2)
        outcomes = []

        def transfer():
            barrier.wait()
            try:
                outcomes.append(service.transfer_coins(1, 2, 50, "race"))
            except InsufficientBalance as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=transfer) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sum(isinstance(o, InsufficientBalance) for o in outcomes), 1)
        self.assertEqual(store.get_wallet(1).balance, 0)
        self.assertEqual(store.get_wallet(2).balance, 50)
        self.assertEqual(len(store.transactions), 1)

    def test_many_concurrent_purchases_conserve_coins(self):
        store = InMemoryLedgerStore()
        store.seed_wallet(SYSTEM_USER_ID, 1000)
        service = CoinLedgerService(store=store)

        def purchase(n):
            try:
                service.purchase_coins(n % 3 + 1, 30, f"pi_{n}")
            except InsufficientSystemFunds:
                pass

        threads = [threading.Thread(target=purchase, args=(n,)) for n in range(40)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(store.transactions), 33)
        self.assertEqual(store.get_wallet(SYSTEM_USER_ID).balance, 10)
        self.assertEqual(sum(w.balance for w in store.wallets.values()), 1000)


class DjangoConcurrencyTest(TransactionTestCase):
    """Concurrent ledger calls through the ORM store, one connection per thread."""

    def setUp(self):
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("Threaded ledger tests need a file-backed SQLite database.")

    def run_concurrently(self, fn, count=2):
        barrier = threading.Barrier(count)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                outcomes.append(fn())
            except CoinLedgerError as exc:
                outcomes.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_sqlite_takes_write_lock_at_begin(self):
        if connection.vendor != "sqlite":
            self.skipTest("SQLite only.")
        self.assertEqual(connection.settings_dict["OPTIONS"]["transaction_mode"], "IMMEDIATE")

    def test_concurrent_transfers_cannot_overdraw(self):
        Wallet.objects.create(user_id=1, balance=50)

        outcomes = self.run_concurrently(
            lambda: CoinLedgerService().transfer_coins(1, 2, 50, "race")
        )

        self.assertEqual(
            sorted(type(o).__name__ for o in outcomes), ["InsufficientBalance", "Transaction"]
        )
        self.assertEqual(Wallet.objects.get(user_id=1).balance, 0)
        self.assertEqual(Wallet.objects.get(user_id=2).balance, 50)
        self.assertEqual(Transaction.objects.count(), 1)

    def test_concurrent_purchases_cannot_drain_past_zero(self):
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=50)
        references = iter(["pi_a", "pi_b"])

        outcomes = self.run_concurrently(
            lambda: CoinLedgerService().purchase_coins(42, 50, next(references))
        )

        self.assertEqual(
            sorted(type(o).__name__ for o in outcomes), ["InsufficientSystemFunds", "Transaction"]
        )
        self.assertEqual(Wallet.objects.get(user_id=SYSTEM_USER_ID).balance, 0)
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 50)


# ============================================================
# API Tests
# ============================================================


class CoinAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="alice", password="pw")
        self.other = User.objects.create_user(username="bob", password="pw")
        self.admin = User.objects.create_user(username="root", password="pw", is_staff=True)


class BalanceAPITest(CoinAPITestCase):
    def test_requires_authentication(self):
        response = self.client.get(f"{API}/balance")
        self.assertIn(response.status_code, (401, 403))

    def test_new_user_balance(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get(f"{API}/balance")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"balance": 0})
        self.assertTrue(Wallet.objects.filter(user_id=self.user.id).exists())

    def test_existing_balance(self):
        Wallet.objects.create(user_id=self.user.id, balance=120)
        self.client.force_authenticate(user=self.user)
        response = self.client.get(f"{API}/balance")
        self.assertEqual(response.data["balance"], 120)


class SupplyAPITest(CoinAPITestCase):
    def test_supply(self):
        SupplyLedger.objects.create(total_amount=1000, minted_amount=25)
        self.client.force_authenticate(user=self.user)
        response = self.client.get(f"{API}/supply")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"total": 1000, "minted": 25})


class TransactionHistoryAPITest(CoinAPITestCase):
    def setUp(self):
        super().setUp()
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=1000)
        service = CoinLedgerService()
        service.give_coins(self.user.id, 100)
        service.give_coins(self.other.id, 100)
        service.transfer_coins(self.user.id, self.other.id, 30, "lunch")
        self.client.force_authenticate(user=self.user)

    def test_list_transactions(self):
        response = self.client.get(f"{API}/transactions")
        self.assertEqual(response.status_code, 200)
        transactions = response.data["transactions"]
        self.assertEqual(len(transactions), 2)
        latest = transactions[0]
        self.assertEqual(latest["transactionType"], "TRANSFER")
        self.assertEqual(latest["fromUserId"], self.user.id)
        self.assertEqual(latest["toUserId"], self.other.id)
        self.assertEqual(latest["amount"], 30)
        self.assertEqual(latest["description"], "lunch")
        self.assertIsNone(latest["referenceId"])
        self.assertIn("timestamp", latest)
        self.assertEqual(transactions[1]["transactionType"], "GIVEAWAY")

    def test_pagination(self):
        response = self.client.get(f"{API}/transactions?limit=1&offset=1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data["transactions"]), 1)
        self.assertEqual(response.data["transactions"][0]["transactionType"], "GIVEAWAY")

    def test_invalid_pagination(self):
        for query in ("limit=0", "limit=1000", "offset=-1", "limit=abc"):
            with self.subTest(query=query):
                response = self.client.get(f"{API}/transactions?{query}")
                self.assertEqual(response.status_code, 400)


class TransferAPITest(CoinAPITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(user=self.user)

    def test_transfer_success(self):
        Wallet.objects.create(user_id=self.user.id, balance=100)
        response = self.client.post(
            f"{API}/transfer",
            {"toUserId": self.other.id, "amount": 40, "description": "gift"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["transaction"]["amount"], 40)
        self.assertEqual(response.data["transaction"]["description"], "gift")
        self.assertEqual(Wallet.objects.get(user_id=self.user.id).balance, 60)
        self.assertEqual(Wallet.objects.get(user_id=self.other.id).balance, 40)

    def test_transfer_default_description(self):
        Wallet.objects.create(user_id=self.user.id, balance=100)
        response = self.client.post(
            f"{API}/transfer", {"toUserId": self.other.id, "amount": 1}, format="json"
        )
        self.assertEqual(response.data["transaction"]["description"], "User transfer")

    def test_transfer_insufficient_balance(self):
        Wallet.objects.create(user_id=self.user.id, balance=10)
        response = self.client.post(
            f"{API}/transfer", {"toUserId": self.other.id, "amount": 40}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"], "Insufficient balance.")
        self.assertEqual(Transaction.objects.count(), 0)

    def test_transfer_without_wallet(self):
        response = self.client.post(
            f"{API}/transfer", {"toUserId": self.other.id, "amount": 40}, format="json"
        )
        self.assertEqual(response.status_code, 404)

    def test_transfer_to_self(self):
        Wallet.objects.create(user_id=self.user.id, balance=100)
        response = self.client.post(
            f"{API}/transfer", {"toUserId": self.user.id, "amount": 40}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_transfer_invalid_body(self):
        for body in ({}, {"toUserId": self.other.id}, {"toUserId": self.other.id, "amount": 0},
                     {"toUserId": self.other.id, "amount": -3}, {"amount": 5}):
            with self.subTest(body=body):
                response = self.client.post(f"{API}/transfer", body, format="json")
                self.assertEqual(response.status_code, 400)

    def test_transfer_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.post(
            f"{API}/transfer", {"toUserId": self.other.id, "amount": 40}, format="json"
        )
        self.assertIn(response.status_code, (401, 403))


class GiveCoinsAPITest(CoinAPITestCase):
    def test_give_success(self):
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=1000)
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            f"{API}/give",
            {"userId": self.user.id, "amount": 75, "reason": "Welcome bonus"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["transaction"]["transactionType"], "GIVEAWAY")
        self.assertEqual(response.data["transaction"]["fromUserId"], SYSTEM_USER_ID)
        self.assertEqual(Wallet.objects.get(user_id=self.user.id).balance, 75)
        self.assertEqual(Wallet.objects.get(user_id=SYSTEM_USER_ID).balance, 925)

    def test_give_requires_admin(self):
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=1000)
        self.client.force_authenticate(user=self.user)
        response = self.client.post(
            f"{API}/give", {"userId": self.user.id, "amount": 75}, format="json"
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(Transaction.objects.count(), 0)

    def test_give_without_system_wallet(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            f"{API}/give", {"userId": self.user.id, "amount": 75}, format="json"
        )
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["error"], "System wallet is not provisioned.")

    def test_give_more_than_available(self):
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=10)
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            f"{API}/give", {"userId": self.user.id, "amount": 75}, format="json"
        )
        self.assertEqual(response.status_code, 400)


class PurchaseAPITest(CoinAPITestCase):
    def setUp(self):
        super().setUp()
        SupplyLedger.objects.create(total_amount=1000, minted_amount=900)

    @patch("coins.views.purchase.create_checkout_session")
    def test_guest_purchase_creates_session(self, mock_session):
        mock_session.return_value = {
            "success": True,
            "response": {"session_id": "cs_1", "url": "https://checkout.stripe.com/cs_1"},
        }
        response = self.client.post(
            f"{API}/purchase", {"amount": "19.99", "coinAmount": 100}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.data, {"sessionId": "cs_1", "url": "https://checkout.stripe.com/cs_1"}
        )
        mock_session.assert_called_once_with(price_in_cents=1999, coin_amount=100, user_id=None)
        # Purchase initiation never moves coins.
        self.assertEqual(Transaction.objects.count(), 0)

    @patch("coins.views.purchase.create_checkout_session")
    def test_authenticated_purchase_carries_user(self, mock_session):
        mock_session.return_value = {
            "success": True,
            "response": {"session_id": "cs_1", "url": "https://checkout.stripe.com/cs_1"},
        }
        self.client.force_authenticate(user=self.user)
        self.client.post(f"{API}/purchase", {"amount": 5, "coinAmount": 50}, format="json")
        mock_session.assert_called_once_with(
            price_in_cents=500, coin_amount=50, user_id=self.user.id
        )

    @patch("coins.views.purchase.create_checkout_session")
    def test_purchase_beyond_supply_refused(self, mock_session):
        response = self.client.post(
            f"{API}/purchase", {"amount": "1.00", "coinAmount": 101}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        mock_session.assert_not_called()

    @patch("coins.views.purchase.create_checkout_session")
    def test_stripe_failure(self, mock_session):
        mock_session.return_value = {"success": False, "response": {"error": "stripe_error"}}
        response = self.client.post(
            f"{API}/purchase", {"amount": "1.00", "coinAmount": 10}, format="json"
        )
        self.assertEqual(response.status_code, 502)

    def test_invalid_body(self):
        for body in ({}, {"amount": "1.00"}, {"coinAmount": 10},
                     {"amount": "0", "coinAmount": 10}, {"amount": "1.00", "coinAmount": 0}):
            with self.subTest(body=body):
                response = self.client.post(f"{API}/purchase", body, format="json")
                self.assertEqual(response.status_code, 400)


# ============================================================
# Webhook & Reconciliation Tests
# ============================================================


class StripeWebhookAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=1000)

    def post_event(self):
        return self.client.post(
            f"{API}/webhook",
            data=b'{"signed": "payload"}',
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=abc",
        )

    @patch("coins.views.webhook.construct_webhook_event")
    def test_bad_signature(self, mock_construct):
        mock_construct.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
        response = self.post_event()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(PaymentEvent.objects.count(), 0)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_other_event_types_acknowledged(self, mock_construct):
        mock_construct.return_value = {"id": "evt_x", "type": "payment_intent.created", "data": {}}
        response = self.post_event()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"received": True})
        self.assertEqual(PaymentEvent.objects.count(), 0)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_checkout_completed_credits_coins(self, mock_construct):
        mock_construct.return_value = checkout_event()
        response = self.post_event()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"received": True})
        mock_construct.assert_called_once_with(b'{"signed": "payload"}', "t=1,v1=abc")

        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)
        self.assertEqual(Wallet.objects.get(user_id=SYSTEM_USER_ID).balance, 700)
        tx = Transaction.objects.get()
        self.assertEqual(tx.reference_id, "pi_abc")
        self.assertEqual(tx.transaction_type, Transaction.TransactionType.PURCHASE)
        event = PaymentEvent.objects.get()
        self.assertEqual(event.status, PaymentEvent.Status.PROCESSED)
        self.assertEqual(event.ledger_transaction_id, tx.id)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_redelivery_credits_once(self, mock_construct):
        mock_construct.return_value = checkout_event()
        self.post_event()
        response = self.post_event()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)
        self.assertEqual(Transaction.objects.count(), 1)
        self.assertEqual(PaymentEvent.objects.count(), 1)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_missing_user_rejected(self, mock_construct):
        mock_construct.return_value = checkout_event(user_id=None)
        response = self.post_event()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(PaymentEvent.objects.count(), 0)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_non_numeric_user_rejected_and_acknowledged(self, mock_construct):
        mock_construct.return_value = checkout_event(user_id="not-a-number")
        response = self.post_event()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"received": True})
        event = PaymentEvent.objects.get()
        self.assertIsNone(event.user_id)
        self.assertEqual(event.status, PaymentEvent.Status.REJECTED)
        self.assertEqual(event.last_error, "Invalid user ID in session metadata.")
        self.assertEqual(Transaction.objects.count(), 0)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_database_error_during_credit_is_reconciled(self, mock_construct):
        mock_construct.return_value = checkout_event()
        with patch(
            "coins.services.payment_event.CoinLedgerService.purchase_coins",
            side_effect=OperationalError("server closed the connection unexpectedly"),
        ):
            with self.assertLogs("coins.views.webhook", level="ERROR"):
                response = self.post_event()

        self.assertEqual(response.status_code, 200)
        event = PaymentEvent.objects.get()
        self.assertEqual(event.status, PaymentEvent.Status.PENDING)
        self.assertFalse(Wallet.objects.filter(user_id=42).exists())

        PaymentEvent.objects.filter(id=event.id).update(
            created_at=timezone.now() - timedelta(hours=1)
        )
        from coins.tasks import retry_failed_payment_events

        with patch("coins.tasks.process_payment_event.delay") as mock_delay:
            result = retry_failed_payment_events.apply()
        self.assertEqual(result.get(), {"dispatched": 1})
        mock_delay.assert_called_once_with(event.id)

        event = PaymentEventService.process(event.id)
        self.assertEqual(event.status, PaymentEvent.Status.PROCESSED)
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_ledger_failure_still_acknowledged(self, mock_construct):
        mock_construct.return_value = checkout_event(coin_amount=5000)
        response = self.post_event()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"received": True})
        event = PaymentEvent.objects.get()
        self.assertEqual(event.status, PaymentEvent.Status.FAILED)
        self.assertEqual(event.retry_count, 1)
        self.assertIn("Not enough coins", event.last_error)
        self.assertEqual(Transaction.objects.count(), 0)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_invalid_coin_amount_rejected_permanently(self, mock_construct):
        mock_construct.return_value = checkout_event(coin_amount=0)
        response = self.post_event()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(PaymentEvent.objects.get().status, PaymentEvent.Status.REJECTED)

    @patch("coins.views.webhook.construct_webhook_event")
    def test_webhook_body_not_logged(self, mock_construct):
        mock_construct.return_value = {"id": "evt_x", "type": "payment_intent.created", "data": {}}
        with self.assertLogs("coins.middleware", level="INFO") as logs:
            self.post_event()
        output = "\n".join(logs.output)
        self.assertIn("body not logged", output)
        self.assertNotIn("signed", output)


class PaymentEventServiceTest(TestCase):
    def setUp(self):
        self.system_wallet = Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=100)

    def test_record_is_idempotent(self):
        first = PaymentEventService.record(checkout_event())
        second = PaymentEventService.record(checkout_event())
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.user_id, 42)
        self.assertEqual(first.coin_amount, 300)
        self.assertEqual(first.reference_id, "pi_abc")
        self.assertEqual(first.status, PaymentEvent.Status.PENDING)

    def test_reference_falls_back_to_session_id(self):
        event = PaymentEventService.record(checkout_event(payment_intent=None))
        self.assertEqual(event.reference_id, "cs_test_1")

    def test_failed_event_succeeds_after_funding(self):
        event = PaymentEventService.record(checkout_event())
        event = PaymentEventService.process(event.id)
        self.assertEqual(event.status, PaymentEvent.Status.FAILED)

        Wallet.objects.filter(user_id=SYSTEM_USER_ID).update(balance=1000)
        event = PaymentEventService.process(event.id)

        self.assertEqual(event.status, PaymentEvent.Status.PROCESSED)
        self.assertEqual(event.last_error, "")
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)

    def test_processed_event_is_not_credited_again(self):
        Wallet.objects.filter(user_id=SYSTEM_USER_ID).update(balance=1000)
        event = PaymentEventService.record(checkout_event())
        PaymentEventService.process(event.id)
        PaymentEventService.process(event.id)
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)
        self.assertEqual(Transaction.objects.count(), 1)

    def test_missing_system_wallet_is_retryable(self):
        Wallet.objects.filter(user_id=SYSTEM_USER_ID).delete()
        event = PaymentEventService.record(checkout_event())
        with self.assertLogs("coins.services.payment_event", level="CRITICAL"):
            event = PaymentEventService.process(event.id)
        self.assertEqual(event.status, PaymentEvent.Status.FAILED)

    def test_process_uses_injected_ledger(self):
        ledger = MagicMock()
        ledger.purchase_coins.side_effect = InsufficientSystemFunds()
        event = PaymentEventService.record(checkout_event())
        event = PaymentEventService.process(event.id, ledger=ledger)
        ledger.purchase_coins.assert_called_once_with(42, 300, "pi_abc")
        self.assertEqual(event.status, PaymentEvent.Status.FAILED)


# ============================================================
# Stripe Gateway Tests
# ============================================================


class StripeGatewayTest(SimpleTestCase):
    SECRET = "whsec_test"

    def sign(self, payload, timestamp=None):
        timestamp = int(time.time()) if timestamp is None else timestamp
        signature = hmac.new(
            self.SECRET.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"t={timestamp},v1={signature}"

    @patch("coins.utils.stripe_gateway.STRIPE_WEBHOOK_SECRET", SECRET)
    def test_construct_webhook_event(self):
        payload = json.dumps(checkout_event())
        event = construct_webhook_event(payload.encode("utf-8"), self.sign(payload))
        self.assertEqual(event["id"], "evt_1")
        self.assertEqual(event["data"]["object"]["metadata"]["userId"], "42")

    @patch("coins.utils.stripe_gateway.STRIPE_WEBHOOK_SECRET", SECRET)
    def test_tampered_payload_rejected(self):
        payload = json.dumps(checkout_event())
        header = self.sign(payload)
        tampered = payload.replace('"300"', '"30000"')
        with self.assertRaises(stripe.SignatureVerificationError):
            construct_webhook_event(tampered.encode("utf-8"), header)

    @patch("coins.utils.stripe_gateway.STRIPE_WEBHOOK_SECRET", SECRET)
    def test_missing_signature_rejected(self):
        with self.assertRaises(stripe.SignatureVerificationError):
            construct_webhook_event(b"{}", None)

    @patch("coins.utils.stripe_gateway.STRIPE_WEBHOOK_SECRET", SECRET)
    def test_event_is_plain_dict(self):
        payload = json.dumps(checkout_event())
        event = construct_webhook_event(payload.encode("utf-8"), self.sign(payload))
        self.assertIsInstance(event, dict)
        self.assertIsInstance(event["data"]["object"]["metadata"], dict)
        self.assertEqual(event["data"]["object"]["metadata"], {"coinAmount": "300", "userId": "42"})

    @patch("coins.utils.stripe_gateway.STRIPE_WEBHOOK_SECRET", SECRET)
    @patch("coins.utils.stripe_gateway.stripe.Webhook.construct_event")
    def test_verification_delegates_to_stripe(self, mock_construct):
        mock_construct.return_value.to_dict.return_value = {"id": "evt_1"}

        event = construct_webhook_event(b"{}", "t=1,v1=abc")

        self.assertEqual(event, {"id": "evt_1"})
        mock_construct.assert_called_once_with(
            payload=b"{}", sig_header="t=1,v1=abc", secret=self.SECRET
        )

    @patch("coins.utils.stripe_gateway.stripe.checkout.Session.create")
    def test_create_checkout_session(self, mock_create):
        mock_create.return_value = MagicMock(id="cs_1", url="https://checkout.stripe.com/cs_1")

        result = create_checkout_session(price_in_cents=1999, coin_amount=100, user_id=42)

        self.assertEqual(
            result,
            {"success": True, "response": {"session_id": "cs_1", "url": "https://checkout.stripe.com/cs_1"}},
        )
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs["metadata"], {"coinAmount": "100", "userId": "42"})
        self.assertEqual(kwargs["mode"], "payment")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 1999)

    @patch("coins.utils.stripe_gateway.stripe.checkout.Session.create")
    def test_guest_session_has_no_user(self, mock_create):
        mock_create.return_value = MagicMock(id="cs_1", url="https://checkout.stripe.com/cs_1")
        create_checkout_session(price_in_cents=100, coin_amount=1)
        self.assertEqual(mock_create.call_args.kwargs["metadata"], {"coinAmount": "1"})

    @patch("coins.utils.stripe_gateway.stripe.checkout.Session.create")
    def test_create_checkout_session_failure(self, mock_create):
        mock_create.side_effect = stripe.StripeError("card processing down")
        result = create_checkout_session(price_in_cents=100, coin_amount=1)
        self.assertFalse(result["success"])
        self.assertEqual(result["response"]["error"], "stripe_error")


# ============================================================
# Celery Task Tests
# ============================================================


class CeleryTaskTest(TransactionTestCase):
    def setUp(self):
        Wallet.objects.create(user_id=SYSTEM_USER_ID, balance=1000)

    def test_process_payment_event_task(self):
        event = PaymentEventService.record(checkout_event())

        from coins.tasks import process_payment_event

        result = process_payment_event.apply(args=[event.id])

        self.assertEqual(result.get()["status"], PaymentEvent.Status.PROCESSED)
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)

    def test_process_missing_event(self):
        from coins.tasks import process_payment_event

        result = process_payment_event.apply(args=[999999])
        self.assertEqual(result.get()["status"], "NOT_FOUND")

    @patch("coins.tasks.process_payment_event.delay")
    def test_retry_failed_payment_events(self, mock_delay):
        retryable = PaymentEventService.record(checkout_event("evt_a"))
        PaymentEvent.objects.filter(id=retryable.id).update(
            status=PaymentEvent.Status.FAILED, retry_count=1
        )
        exhausted = PaymentEventService.record(checkout_event("evt_b"))
        PaymentEvent.objects.filter(id=exhausted.id).update(
            status=PaymentEvent.Status.FAILED, retry_count=99
        )
        PaymentEventService.record(checkout_event("evt_c"))

        from coins.tasks import retry_failed_payment_events

        result = retry_failed_payment_events.apply()

        self.assertEqual(result.get()["dispatched"], 1)
        mock_delay.assert_called_once_with(retryable.id)

    def test_retry_with_nothing_to_do(self):
        from coins.tasks import retry_failed_payment_events

        self.assertEqual(retry_failed_payment_events.apply().get(), {"dispatched": 0})


# ============================================================
# Provisioning Tests
# ============================================================


class ProvisionCoinsCommandTest(TestCase):
    def test_provisions_supply_and_system_wallet(self):
        out = StringIO()
        call_command("provision_coins", total=5000, stdout=out)

        self.assertEqual(SupplyLedger.current().total_amount, 5000)
        self.assertEqual(Wallet.objects.get(user_id=SYSTEM_USER_ID).balance, 5000)
        self.assertIn("System wallet created", out.getvalue())

    def test_is_idempotent(self):
        call_command("provision_coins", total=5000, stdout=StringIO())
        Wallet.objects.filter(user_id=SYSTEM_USER_ID).update(balance=4000)

        out = StringIO()
        call_command("provision_coins", total=9000, stdout=out)

        self.assertEqual(SupplyLedger.objects.count(), 1)
        self.assertEqual(SupplyLedger.current().total_amount, 5000)
        self.assertEqual(Wallet.objects.get(user_id=SYSTEM_USER_ID).balance, 4000)
        self.assertIn("exists", out.getvalue())

    def test_ledger_usable_after_provisioning(self):
        call_command("provision_coins", total=5000, stdout=StringIO())
        CoinLedgerService().purchase_coins(42, 300, "pi_abc")
        self.assertEqual(Wallet.objects.get(user_id=42).balance, 300)


class ProvisioningCheckTest(TestCase):
    def test_reports_missing_wallet_and_supply(self):
        messages = check_coin_ledger_provisioned(databases=["default"])
        self.assertEqual(sorted(m.id for m in messages), ["coins.E001", "coins.W001"])

    def test_clean_after_provisioning(self):
        call_command("provision_coins", stdout=StringIO())
        self.assertEqual(check_coin_ledger_provisioned(databases=["default"]), [])

    def test_skipped_without_databases(self):
        self.assertEqual(check_coin_ledger_provisioned(), [])
