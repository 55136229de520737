"""
Direct on-chain settlement on Solana.

Instead of asking a facilitator, the engine holds a funded keypair and
pays invoices itself: one system transfer of ``round(amount * 1e9)``
lamports to the invoice receiver, anchored on a fresh blockhash, sent and
confirmed at the configured commitment. Only SOL is supported.
"""

from __future__ import annotations

import base64
import binascii
import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import SecretStr
from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from tollgate.config import LedgerConfig
from tollgate.errors import ConfigurationError, SettlementError
from tollgate.observability.logging import get_logger
from tollgate.payments.base import LAMPORTS_PER_SOL, Invoice, PaymentSettler, Settlement

logger = get_logger(__name__)

SUPPORTED_ASSET = "SOL"


def load_keypair(secret: SecretStr | str | list[int] | bytes | None) -> Keypair:
    """
    Parse a Solana signing key.

    Accepts a JSON byte array, base64 or a base58 string. Decoded bytes
    may be a 32-byte seed or a full 64-byte keypair.

    Raises:
        ConfigurationError: The key is missing or in none of these formats.
    """
    if isinstance(secret, SecretStr):
        secret = secret.get_secret_value()
    if secret is None or (isinstance(secret, str) and not secret.strip()):
        raise ConfigurationError("Solana secret key is required for direct payments")

    if isinstance(secret, list):
        return _keypair_from_bytes(bytes(secret))
    if isinstance(secret, bytes):
        return _keypair_from_bytes(secret)

    value = secret.strip()
    if value.startswith("["):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Failed to parse Solana secret key JSON: {exc}") from exc
        if not isinstance(parsed, list):
            raise ConfigurationError("Secret key JSON must be an array")
        return _keypair_from_bytes(bytes(parsed))

    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) in (32, 64):
        return _keypair_from_bytes(decoded)

    try:
        return Keypair.from_base58_string(value)
    except ValueError as exc:
        raise ConfigurationError(
            "Failed to decode Solana secret key. Provide base64, base58, or JSON array."
        ) from exc


def _keypair_from_bytes(raw: bytes) -> Keypair:
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    raise ConfigurationError(f"Unexpected Solana secret key length {len(raw)}")


def to_lamports(amount: float | str | Decimal) -> int:
    """Convert a SOL amount to lamports, rounding half up."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise SettlementError(f'Invalid payment amount "{amount}"') from exc
    if not value.is_finite():
        raise SettlementError(f'Invalid payment amount "{amount}"')
    return int((value * LAMPORTS_PER_SOL).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class DirectLedgerSettler(PaymentSettler):
    """
    Pays invoices with a local keypair.

    Args:
        keypair: Funded payer keypair.
        config: RPC endpoint, commitment and confirmation depth.
        client: Solana RPC client. Created from ``config.rpc_url`` if omitted.
    """

    provider = "direct_ledger"

    def __init__(
        self,
        keypair: Keypair,
        config: LedgerConfig | None = None,
        client: AsyncClient | Any | None = None,
    ) -> None:
        self._config = config or LedgerConfig()
        if self._config.asset.upper() != SUPPORTED_ASSET:
            raise ConfigurationError(
                f'Unsupported asset "{self._config.asset}". '
                f"Direct ledger settlement supports only {SUPPORTED_ASSET}."
            )
        if client is None:
            if not self._config.rpc_url:
                raise ConfigurationError("Solana RPC URL is required for direct payments")
            client = AsyncClient(self._config.rpc_url, commitment=self._config.commitment)
            self._owns_client = True
        else:
            self._owns_client = False

        self._client = client
        self._keypair = keypair
        logger.info(
            "Direct ledger settler configured",
            commitment=self._config.commitment,
            min_confirmations=self._config.min_confirmations,
            signer=str(keypair.pubkey()),
        )

    @property
    def payer(self) -> Pubkey:
        return self._keypair.pubkey()

    async def settle(self, invoice: Invoice) -> Settlement:
        if invoice.asset.upper() != SUPPORTED_ASSET:
            raise SettlementError(
                f'Unsupported asset "{invoice.asset}". '
                f"Direct ledger settlement supports only {SUPPORTED_ASSET}."
            )
        if invoice.amount <= 0:
            raise SettlementError(f'Invalid payment amount "{invoice.amount}"')

        lamports = to_lamports(invoice.amount)
        if lamports <= 0:
            raise SettlementError(
                f"Calculated lamports must be positive. Received amount: {invoice.amount}"
            )

        try:
            receiver = Pubkey.from_string(invoice.receiver)
        except ValueError as exc:
            raise SettlementError(f'Invalid receiver account "{invoice.receiver}"') from exc

        commitment = self._config.commitment
        log = logger.bind(reference=invoice.reference, receiver=invoice.receiver)

        try:
            latest = (await self._client.get_latest_blockhash(commitment)).value
            instruction = transfer(
                TransferParams(from_pubkey=self.payer, to_pubkey=receiver, lamports=lamports)
            )
            message = Message.new_with_blockhash([instruction], self.payer, latest.blockhash)
            transaction = Transaction([self._keypair], message, latest.blockhash)

            log.info(
                "Submitting on-chain payment",
                lamports=lamports,
                signer=str(self.payer),
                recent_blockhash=str(latest.blockhash),
            )
            signature = (
                await self._client.send_transaction(
                    transaction, opts=TxOpts(preflight_commitment=commitment)
                )
            ).value
        except Exception as exc:
            log.error("On-chain payment failed", error=str(exc))
            raise SettlementError(f"On-chain payment failed: {exc}") from exc

        try:
            await self._client.confirm_transaction(
                signature,
                commitment,
                last_valid_block_height=latest.last_valid_block_height,
            )
            if self._config.min_confirmations > 1:
                await self._client.confirm_transaction(signature, commitment)
        except Exception as exc:
            log.error(
                "On-chain payment submitted but not confirmed",
                signature=str(signature),
                lamports=lamports,
                error=str(exc),
            )
            raise SettlementError(
                f"On-chain payment submitted but not confirmed: {exc}",
                body={
                    "signature": str(signature),
                    "lamports": lamports,
                    "reference": invoice.reference,
                },
            ) from exc

        settlement = Settlement(
            provider=self.provider,
            reference=invoice.reference,
            signature=str(signature),
            receiver=invoice.receiver,
            amount=invoice.amount,
            asset=invoice.asset,
            lamports=lamports,
            commitment=commitment,
        )
        log.info("On-chain payment settled", signature=settlement.signature, lamports=lamports)
        return settlement

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()
