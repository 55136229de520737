"""
Request signing for the x402 secured transport.

Secured requests carry two headers:

    x-402-wallet      the configured wallet id (when set)
    x-402-signature   HMAC-SHA256 of the compact JSON payload, hex encoded

The same signer verifies signatures presented by executors.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from pydantic import SecretStr

from tollgate.errors import ConfigurationError

WALLET_HEADER = "x-402-wallet"
SIGNATURE_HEADER = "x-402-signature"


def canonical_payload(payload: Any) -> bytes:
    """Serialize a payload the way it is signed: strings as-is, everything else as compact JSON."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class ProtocolSigner:
    """
    HMAC signer for outgoing secured requests.

    Args:
        private_key: Shared signing secret.
        wallet_id: Optional wallet identifier sent alongside signatures.
    """

    def __init__(
        self,
        private_key: SecretStr | str | None = None,
        wallet_id: str | None = None,
    ) -> None:
        if isinstance(private_key, SecretStr):
            private_key = private_key.get_secret_value()
        self._key = private_key or None
        self._wallet_id = wallet_id

    @property
    def is_configured(self) -> bool:
        return self._key is not None

    @property
    def wallet_id(self) -> str | None:
        return self._wallet_id

    def sign(self, payload: Any) -> str:
        """Hex HMAC-SHA256 of the payload. Raises ConfigurationError without a key."""
        if self._key is None:
            raise ConfigurationError("x402 private key is not configured")
        return hmac.new(
            self._key.encode("utf-8"), canonical_payload(payload), hashlib.sha256
        ).hexdigest()

    def headers(
        self,
        payload: Any,
        extra: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Headers for a secured request carrying `payload`."""
        headers = dict(extra or {})
        if self._wallet_id:
            headers[WALLET_HEADER] = self._wallet_id
        headers[SIGNATURE_HEADER] = self.sign(payload)
        return headers

    def verify(self, signature: str | None, payload: Any) -> bool:
        """Constant-time check of an incoming signature. Never raises."""
        if self._key is None or not signature:
            return False
        expected = self.sign(payload)
        try:
            presented = signature.strip().lower().encode("ascii")
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(presented, expected.encode("ascii"))
