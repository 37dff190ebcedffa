"""
Typed failures raised by the coin ledger.

Each exception carries the HTTP status the API boundary answers with, so
views can map any ledger failure with a single ``except CoinLedgerError``.
"""


class CoinLedgerError(Exception):
    status_code = 500
    default_message = "Coin ledger operation failed."

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class LedgerValidationError(CoinLedgerError, ValueError):
    """Rejected before any store transaction is opened."""

    status_code = 400
    default_message = "Invalid ledger request."


class InvalidAmount(LedgerValidationError):
    default_message = "Amount must be a positive integer."


class InvalidParticipants(LedgerValidationError):
    default_message = "Invalid source or destination wallet."


class InsufficientFunds(CoinLedgerError):
    status_code = 400
    default_message = "Insufficient funds."


class InsufficientBalance(InsufficientFunds):
    default_message = "Insufficient balance."


class InsufficientSystemFunds(InsufficientFunds):
    default_message = "Not enough coins available."


class SenderWalletNotFound(CoinLedgerError):
    status_code = 404
    default_message = "Sender wallet not found."


class SystemWalletMissing(CoinLedgerError):
    """The reserved system wallet was never provisioned. Not retryable."""

    status_code = 503
    default_message = "System wallet is not provisioned."


class LedgerStoreError(CoinLedgerError):
    """Store or transport fault. The whole operation is safe to retry."""

    status_code = 503
    default_message = "Ledger store unavailable."


class LedgerTimeout(LedgerStoreError):
    default_message = "Ledger transaction timed out."


class ImmutableRecordError(CoinLedgerError):
    default_message = "Ledger transactions are append-only."
