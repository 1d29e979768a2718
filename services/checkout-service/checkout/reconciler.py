"""
Applies an M-Pesa STK callback to the pending transaction it refers to,
exactly once.

The pending transaction row is locked for the whole unit of work, so a
duplicate callback racing the first one waits for it to commit and then
sees a terminal status and does nothing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from .errors import AmountMismatchError, MalformedCallbackError, NotFoundError, ValidationError
from .models import (
    COMPLETED,
    FAILED,
    ORDER_COMPLETED,
    ORDER_FAILED,
    PAID,
    PAYMENT_FAILED,
    TERMINAL_STATUSES,
)
from .normalizer import to_money
from .store import OrderStore

logger = logging.getLogger(__name__)

SUCCESS_CODE = 0


@dataclass(frozen=True)
class ProviderCallback:
    checkout_request_id: str
    result_code: int
    result_description: str = ""
    items: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_CODE


@dataclass(frozen=True)
class ReconcileOutcome:
    order_id: int
    status: str
    applied: bool
    receipt: Optional[str] = None


def parse_callback(body: Any) -> ProviderCallback:
    """Pull the fields we need out of Body.stkCallback, or reject the whole thing."""
    envelope = body.get("Body") if isinstance(body, dict) else None
    stk = envelope.get("stkCallback") if isinstance(envelope, dict) else None
    if not isinstance(stk, dict):
        raise MalformedCallbackError("Missing Body.stkCallback")

    token = stk.get("CheckoutRequestID")
    code = stk.get("ResultCode")
    if not token or code is None:
        raise MalformedCallbackError("Missing required fields in callback")
    try:
        code = int(code)
    except (TypeError, ValueError):
        raise MalformedCallbackError(f"Invalid ResultCode: {code!r}")

    metadata = stk.get("CallbackMetadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedCallbackError("CallbackMetadata must be an object")
    items = metadata.get("Item") or []
    if not isinstance(items, list):
        raise MalformedCallbackError("CallbackMetadata.Item must be a list")

    desc = stk.get("ResultDesc", stk.get("ResultDescription", ""))
    return ProviderCallback(
        checkout_request_id=str(token),
        result_code=code,
        result_description=str(desc or ""),
        items=items,
    )


def flatten_metadata(items: list) -> dict[str, Any]:
    flat = {}
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            flat[item["Name"]] = item.get("Value")
    return flat


def parse_transaction_date(raw: Any) -> Optional[datetime]:
    # Daraja sends YYYYMMDDHHmmss as a number
    if raw in (None, ""):
        return None
    try:
        return datetime.strptime(str(raw), "%Y%m%d%H%M%S")
    except ValueError:
        logger.warning("Unparseable TransactionDate=%r", raw)
        return None


class CallbackReconciler:
    def __init__(self, store: OrderStore):
        self.store = store

    def reconcile(self, callback: ProviderCallback) -> ReconcileOutcome:
        meta = flatten_metadata(callback.items)
        token = callback.checkout_request_id

        with self.store.unit_of_work() as uow:
            txn = uow.lock_pending_transaction(token)
            if txn is None:
                raise NotFoundError(f"Transaction not found: {token}")

            if txn.status in TERMINAL_STATUSES:
                logger.info("Duplicate callback ignored token=%s status=%s", token, txn.status)
                return ReconcileOutcome(
                    order_id=txn.order_id,
                    status=txn.status,
                    applied=False,
                    receipt=txn.mpesa_receipt_number,
                )

            self._check_amount(txn.amount, meta.get("Amount"), callback.succeeded, token)
            receipt = meta.get("MpesaReceiptNumber")
            if callback.succeeded and receipt in (None, ""):
                raise MalformedCallbackError(f"Success callback without receipt number for {token}")

            order = uow.get_order(txn.order_id, for_update=True)
            payment = uow.get_payment(txn.order_id, for_update=True)
            if order is None or payment is None:
                raise NotFoundError(f"Order records missing for token {token}")

            txn.result_code = callback.result_code
            txn.result_description = callback.result_description

            if callback.succeeded:
                receipt = str(receipt)

                txn.status = COMPLETED
                txn.mpesa_receipt_number = receipt
                txn.transaction_date = parse_transaction_date(meta.get("TransactionDate"))

                order.status = ORDER_COMPLETED
                order.payment_status = PAID

                payment.status = COMPLETED
                payment.transaction_reference = receipt
                payment.payment_reference = token

                logger.info("Payment completed order_id=%s receipt=%s", order.id, receipt)
                return ReconcileOutcome(order_id=order.id, status=COMPLETED, applied=True, receipt=receipt)

            txn.status = FAILED

            order.status = ORDER_FAILED
            order.payment_status = PAYMENT_FAILED

            payment.status = FAILED
            payment.failure_reason = callback.result_description

            logger.info(
                "Payment failed order_id=%s code=%s reason=%s",
                order.id, callback.result_code, callback.result_description,
            )
            return ReconcileOutcome(order_id=order.id, status=FAILED, applied=True)

    @staticmethod
    def _check_amount(expected: Decimal, reported: Any, succeeded: bool, token: str) -> None:
        # failure callbacks normally carry no metadata at all
        if reported is None:
            if succeeded:
                raise AmountMismatchError(
                    f"Success callback without amount for {token}", expected=expected, reported=None
                )
            return
        try:
            value = to_money(reported)
        except ValidationError:
            raise AmountMismatchError(
                f"Unreadable callback amount {reported!r} for {token}", expected=expected, reported=reported
            )
        if value != expected:
            raise AmountMismatchError(
                f"Amount mismatch for {token}: expected {expected}, got {value}",
                expected=expected,
                reported=reported,
            )
