"""
Verification of payments made by clients directly on Solana.

Before a prepaid command runs, the client's transaction is looked up on
the ledger and checked: it must exist, must not have failed, and must
have credited the expected receiver with the expected amount (within a
small lamport tolerance that absorbs fee and rent accounting). Freshly
submitted transactions may not be indexed yet, so lookups are retried a
fixed number of times.

A verification failure is a normal outcome reported in `PaymentVerdict`;
only a missing ledger endpoint raises.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field
from solana.rpc.async_api import AsyncClient
from solders.signature import Signature

from tollgate.config import VerificationConfig
from tollgate.errors import ConfigurationError, SettlementError
from tollgate.observability.logging import get_logger
from tollgate.payments.base import LAMPORTS_PER_SOL
from tollgate.payments.ledger import to_lamports

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ClientPayment(BaseModel):
    """A payment a client claims to have made for a command."""

    signature: str
    receiver: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    reference: str | None = None
    sender: str | None = None


class PaymentVerdict(BaseModel):
    """Outcome of verifying a client payment."""

    valid: bool
    reason: str | None = None
    signature: str
    receiver: str | None = None
    amount: float | None = None
    lamports: int | None = None
    block_time: int | None = None
    attempts: int = 0


class _NotFound(Exception):
    pass


class ClientPaymentVerifier:
    """
    Checks client transactions against ledger state.

    Args:
        config: RPC endpoint, commitment, retry bounds and tolerance.
        client: Solana RPC client. Created from ``config.rpc_url`` if omitted.
        sleep: Awaitable used between attempts.
    """

    def __init__(
        self,
        config: VerificationConfig | None = None,
        client: AsyncClient | Any | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or VerificationConfig()
        self._owns_client = client is None and bool(self._config.rpc_url)
        if client is None and self._config.rpc_url:
            client = AsyncClient(self._config.rpc_url, commitment=self._config.commitment)
        self._client = client
        self._sleep = sleep

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    async def verify(
        self,
        signature: str,
        expected_receiver: str,
        expected_amount: float,
    ) -> PaymentVerdict:
        """
        Verify that `signature` paid `expected_amount` SOL to `expected_receiver`.

        Raises:
            ConfigurationError: No ledger endpoint is configured.
        """
        if self._client is None:
            raise ConfigurationError("Solana connection is not configured")

        log = logger.bind(signature=signature, receiver=expected_receiver)

        try:
            to_lamports(expected_amount)
        except SettlementError:
            return PaymentVerdict(
                valid=False, reason="Invalid expected amount", signature=signature
            )

        try:
            parsed_signature = Signature.from_string(signature)
        except ValueError:
            return PaymentVerdict(
                valid=False, reason="Invalid transaction signature", signature=signature
            )

        max_attempts = self._config.max_attempts
        reason = "Transaction not found after retries"
        for attempt in range(1, max_attempts + 1):
            try:
                transaction = await self._fetch(parsed_signature)
            except _NotFound:
                reason = "Transaction not found (RPC may be delayed)"
                log.debug("Transaction not found yet", attempt=attempt)
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
                log.warning("Transaction lookup failed", attempt=attempt, error=reason)
            else:
                verdict = self._check(transaction, signature, expected_receiver, expected_amount)
                verdict.attempts = attempt
                log.info("Client payment checked", valid=verdict.valid, reason=verdict.reason)
                return verdict

            if attempt < max_attempts:
                await self._sleep(self._config.delay_s)

        log.error("Client payment could not be verified", reason=reason)
        return PaymentVerdict(
            valid=False, reason=reason, signature=signature, attempts=max_attempts
        )

    async def _fetch(self, signature: Signature) -> dict[str, Any]:
        response = await self._client.get_transaction(
            signature,
            encoding="json",
            commitment=self._config.commitment,
            max_supported_transaction_version=0,
        )
        if getattr(response, "value", None) is None:
            raise _NotFound()
        result = json.loads(response.to_json()).get("result")
        if not isinstance(result, dict):
            raise _NotFound()
        return result

    def _check(
        self,
        transaction: dict[str, Any],
        signature: str,
        expected_receiver: str,
        expected_amount: float,
    ) -> PaymentVerdict:
        meta = transaction.get("meta")
        if not isinstance(meta, dict) or meta.get("err") is not None:
            return PaymentVerdict(valid=False, reason="Transaction failed", signature=signature)

        keys = _account_keys(transaction)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []

        try:
            index = keys.index(str(expected_receiver))
        except ValueError:
            return PaymentVerdict(
                valid=False, reason="Receiver not found in transaction", signature=signature
            )

        transferred = 0
        if index < len(pre) and index < len(post):
            transferred = max(int(post[index]) - int(pre[index]), 0)

        expected_lamports = to_lamports(expected_amount)
        if abs(transferred - expected_lamports) > self._config.tolerance_lamports:
            return PaymentVerdict(
                valid=False,
                reason=f"Amount mismatch. Expected: {expected_lamports}, Got: {transferred}",
                signature=signature,
                receiver=expected_receiver,
                lamports=transferred,
            )

        return PaymentVerdict(
            valid=True,
            signature=signature,
            receiver=expected_receiver,
            amount=transferred / LAMPORTS_PER_SOL,
            lamports=transferred,
            block_time=transaction.get("blockTime"),
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()


def _account_keys(transaction: dict[str, Any]) -> list[str]:
    """Static account keys followed by any addresses loaded from lookup tables."""
    message = (transaction.get("transaction") or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        keys.append(key.get("pubkey") if isinstance(key, dict) else str(key))

    loaded = (transaction.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys
