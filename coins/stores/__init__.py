from coins.stores.base import LedgerStore
from coins.stores.orm import DjangoLedgerStore
from coins.stores.memory import InMemoryLedgerStore

__all__ = ["LedgerStore", "DjangoLedgerStore", "InMemoryLedgerStore"]
