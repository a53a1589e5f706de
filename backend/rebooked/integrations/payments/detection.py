from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from rebooked.models import Order, PaymentTransaction

PROVIDER_BOBPAY = "bobpay"
PROVIDER_PAYSTACK = "paystack"
PROVIDER_UNKNOWN = "unknown"


@dataclass(frozen=True)
class BobPayTxn:
    custom_payment_id: str
    transaction_id: int | None = None
    source: str = "stored"

    @property
    def name(self) -> str:
        return PROVIDER_BOBPAY


@dataclass(frozen=True)
class PaystackTxn:
    payment_reference: str
    transaction_id: int | None = None
    source: str = "stored"

    @property
    def name(self) -> str:
        return PROVIDER_PAYSTACK


@dataclass(frozen=True)
class UnknownProvider:
    reason: str
    transaction_id: int | None = None
    source: str = "none"

    @property
    def name(self) -> str:
        return PROVIDER_UNKNOWN


DetectedProvider = Union[BobPayTxn, PaystackTxn, UnknownProvider]


def _normalize(value) -> str:
    return str(value or "").strip().lower()


def latest_transaction(order: Order) -> PaymentTransaction | None:
    row = (
        PaymentTransaction.query.filter_by(order_id=int(order.id), status="success")
        .order_by(PaymentTransaction.id.desc())
        .first()
    )
    if row is not None:
        return row
    return (
        PaymentTransaction.query.filter_by(order_id=int(order.id))
        .order_by(PaymentTransaction.id.desc())
        .first()
    )


def _tagged(provider: str, order: Order, tx: PaymentTransaction | None, source: str) -> DetectedProvider:
    tx_id = int(tx.id) if tx is not None else None
    if provider == PROVIDER_BOBPAY:
        custom_payment_id = (order.custom_payment_id or (tx.reference if tx is not None else "") or "").strip()
        return BobPayTxn(custom_payment_id=custom_payment_id, transaction_id=tx_id, source=source)
    reference = (order.payment_reference or (tx.provider_reference if tx is not None else "") or "").strip()
    return PaystackTxn(payment_reference=reference, transaction_id=tx_id, source=source)


def detect_provider(order: Order, transaction: PaymentTransaction | None = None) -> DetectedProvider:
    """Resolve which processor took the money for ``order``.

    The provider recorded at checkout wins. Rows that predate that column
    fall back to the transaction's ``payment_method`` and then to a
    ``provider`` marker inside the stored provider response. Anything else
    is ``UnknownProvider``.
    """
    tx = transaction if transaction is not None else latest_transaction(order)

    stored = _normalize(order.payment_provider)
    if stored in (PROVIDER_BOBPAY, PROVIDER_PAYSTACK):
        return _tagged(stored, order, tx, "stored")

    if tx is None:
        return UnknownProvider(reason="no_payment_transaction")

    method = _normalize(tx.payment_method)
    if method in (PROVIDER_BOBPAY, PROVIDER_PAYSTACK):
        return _tagged(method, order, tx, "payment_method")

    marker = _normalize(tx.provider_response().get("provider"))
    if marker in (PROVIDER_BOBPAY, PROVIDER_PAYSTACK):
        return _tagged(marker, order, tx, "response_marker")

    return UnknownProvider(reason="no_provider_marker", transaction_id=int(tx.id), source="inconclusive")
