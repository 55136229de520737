"""Payments: invoice parsing, request signing, settlement backends and client verification."""

from tollgate.payments.base import Invoice, PaymentSettler, Settlement
from tollgate.payments.gateway import GatewaySettler
from tollgate.payments.ledger import DirectLedgerSettler
from tollgate.payments.signing import ProtocolSigner
from tollgate.payments.verification import ClientPaymentVerifier

__all__ = [
    "ClientPaymentVerifier",
    "DirectLedgerSettler",
    "GatewaySettler",
    "Invoice",
    "PaymentSettler",
    "ProtocolSigner",
    "Settlement",
]
