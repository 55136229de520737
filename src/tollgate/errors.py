"""
Error taxonomy for the dispatch engine.

Errors fall into two groups:

    - Raised to the caller before any network call: configuration,
      validation, capacity and selection errors.
    - Terminal for a single handshake attempt: protocol, settlement,
      confirmation and transport errors. The dispatcher converts these
      into a failed DispatchResult for the affected executor only.
"""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all tollgate errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(DispatchError):
    """A required setting is missing or unsupported (signing key, asset, ledger endpoint)."""


class ValidationError(DispatchError):
    """Selection parameters or command input are malformed."""


class CapacityError(DispatchError):
    """Not enough ready executors match the intent."""


class IndeterminateSelectionError(DispatchError):
    """A strategy could not rank any candidate (e.g. no executor reports a location)."""


class ExecutorNotFoundError(DispatchError):
    """No executor is registered under the given id."""

    def __init__(self, executor_id: str) -> None:
        super().__init__(f"Executor '{executor_id}' not found", {"executor_id": executor_id})
        self.executor_id = executor_id


class ProtocolError(DispatchError):
    """The executor's 402 response could not be turned into an invoice."""


class SettlementError(DispatchError):
    """The facilitator or the ledger rejected or failed the payment."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.body = body


class ConfirmationExhausted(DispatchError):
    """The executor kept answering 402 after payment until the attempt ceiling."""


class TransportError(DispatchError):
    """No response at all was received from a remote endpoint."""


class DelegateError(DispatchError):
    """The external selection scorer failed or answered with an unusable verdict."""
