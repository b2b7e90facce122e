"""
Exception hierarchy for the Constellation signature server.

Every error raised at the engine boundary derives from
``ConstellationError`` and carries a machine-readable ``code`` plus the
HTTP status the API layer answers with.
"""

from __future__ import annotations

from typing import Any


class ConstellationError(Exception):
    """Base class for all coordination errors."""

    status = 500

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or "internal_error"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidEncodingError(ConstellationError):
    """Malformed transaction, signature, address or envelope encoding."""

    status = 400

    def __init__(self, message: str):
        super().__init__(message, "invalid_encoding")


class InvalidTransactionError(ConstellationError):
    """Well-formed but semantically invalid transaction."""

    status = 400

    def __init__(self, message: str):
        super().__init__(message, "invalid_transaction")


class InvalidSignatureError(ConstellationError):
    """A signature failed to verify or matched no known signer."""

    status = 400

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, "invalid_signature")


class AccountNotFoundError(ConstellationError):
    """The ledger has no account with the requested address."""

    status = 400

    def __init__(self, address: str):
        super().__init__(f"Account not found: {address}", "account_not_found")
        self.address = address


class UnknownTransactionError(ConstellationError):
    """No pending state exists for the given transaction hash."""

    status = 404

    def __init__(self, tx_hash: str):
        super().__init__(f"Unknown transaction: {tx_hash}", "unknown_transaction")
        self.tx_hash = tx_hash


class InvalidStateTransitionError(ConstellationError):
    status = 409

    def __init__(self, message: str):
        super().__init__(message, "invalid_state_transition")


class StaleStateError(ConstellationError):
    """A compare-and-swap write lost against a concurrent writer."""

    status = 409

    def __init__(self, message: str):
        super().__init__(message, "stale_state")


class SubmissionError(ConstellationError):
    """The ledger network rejected a fully-signed transaction."""

    status = 502

    def __init__(self, message: str, result: dict[str, Any] | None = None):
        super().__init__(message, "submission_failed")
        self.result = result or {}

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.result:
            data["result"] = self.result
        return data


class LedgerUnavailableError(ConstellationError):
    """The ledger query or submission service could not be reached."""

    status = 503

    def __init__(self, message: str):
        super().__init__(message, "ledger_unavailable")
