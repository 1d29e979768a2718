"""
Checkout state machine.

    created -> pending (cash, settled out of band)
    created -> processing/initiated (mpesa) -> completed | failed

checkout() writes the whole order aggregate in one unit of work.
initiate_payment() asks the provider to push a payment prompt and changes
no local state. handle_callback() is the only path to a terminal state.
"""
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from fastapi.concurrency import run_in_threadpool

from .errors import (
    AmountMismatchError,
    CheckoutError,
    NotFoundError,
    ValidationError,
)
from .gateway import ProviderGateway
from .models import (
    COMPLETED,
    INITIATED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    PAYMENT_PENDING,
    TERMINAL_STATUSES,
    MpesaTransaction,
)
from .normalizer import CheckoutRequest, normalize_checkout
from .reconciler import CallbackReconciler, ReconcileOutcome, parse_callback
from .store import OrderStore

logger = logging.getLogger(__name__)

MPESA_SHORTCODE = os.getenv("MPESA_SHORTCODE", "")
MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL", "")

ACK_OK = {"ResultCode": 0, "ResultDesc": "Callback received successfully"}
ACK_WITH_ISSUES = {"ResultCode": 0, "ResultDesc": "Callback received with issues"}

Publisher = Callable[..., None]


@dataclass(frozen=True)
class CheckoutResult:
    order_id: int
    transaction_id: str
    checkout_request_id: Optional[str] = None


@dataclass(frozen=True)
class InitiationDetails:
    order_id: int
    amount: Any
    phone: str


def make_transaction_id(order_id: int, now: Optional[float] = None) -> str:
    return f"ORD{order_id}{int(now if now is not None else time.time())}"


def make_checkout_request_id(order_id: int, now: Optional[float] = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    return f"MPESA_{millis}_{order_id}"


def _no_publish(event_type: str, payload: dict, *, safe: bool = False) -> None:
    pass


class CheckoutCoordinator:
    def __init__(
        self,
        store: OrderStore,
        gateway: Optional[ProviderGateway],
        *,
        shortcode: str = MPESA_SHORTCODE,
        callback_url: str = MPESA_CALLBACK_URL,
        publisher: Publisher = _no_publish,
    ):
        self.store = store
        self.gateway = gateway
        self.shortcode = shortcode
        self.callback_url = callback_url
        self.publish = publisher
        self.reconciler = CallbackReconciler(store)

    # -- checkout -----------------------------------------------------------

    def checkout(self, payload: Any) -> CheckoutResult:
        req = payload if isinstance(payload, CheckoutRequest) else normalize_checkout(payload)

        order_status = ORDER_PROCESSING if req.is_async else ORDER_PENDING
        payment_status = INITIATED if req.is_async else PAYMENT_PENDING
        token = None

        with self.store.unit_of_work() as uow:
            order_id = uow.create_order(req.amount, order_status)

            for line in req.lines:
                uow.add_item(order_id, line.product_id, line.quantity, line.subtotal)

            transaction_id = make_transaction_id(order_id)
            uow.create_payment(order_id, req.amount, req.method, req.phone, payment_status, transaction_id)

            if req.is_async:
                token = make_checkout_request_id(order_id)
                uow.create_pending_transaction(order_id, req.phone, req.amount, token)
                uow.attach_correlation_token(order_id, token)

        logger.info(
            "Order created order_id=%s method=%s total=%s transaction_id=%s",
            order_id, req.method, req.amount, transaction_id,
        )
        return CheckoutResult(order_id=order_id, transaction_id=transaction_id, checkout_request_id=token)

    # -- provider push ------------------------------------------------------

    def _initiation_details(self, order_id: int) -> InitiationDetails:
        if self.store.get_order(order_id) is None:
            raise NotFoundError("Order not found")

        txn: Optional[MpesaTransaction] = self.store.get_pending_transaction(order_id)
        if txn is None:
            raise ValidationError("Order is not awaiting a mobile money payment")
        if txn.status in TERMINAL_STATUSES:
            raise ValidationError(f"Payment already {txn.status}")

        return InitiationDetails(order_id=order_id, amount=txn.amount, phone=txn.phone)

    async def initiate_payment(self, order_id: int) -> dict:
        """
        Send the STK push for an existing order. A failure here leaves the
        order in processing/initiated; only the callback moves it on.
        """
        if self.gateway is None:
            raise CheckoutError("Payment provider is not configured")

        details = await run_in_threadpool(self._initiation_details, order_id)

        token = await self.gateway.authenticate()
        ack = await self.gateway.initiate_push(
            shortcode=self.shortcode,
            amount=details.amount,
            phone=details.phone,
            callback_url=self.callback_url,
            account_ref=f"Order_{order_id}",
            description=f"Payment for Order #{order_id}",
            token=token,
        )
        logger.info(
            "STK push accepted order_id=%s provider_checkout_id=%s",
            order_id, ack.get("CheckoutRequestID"),
        )
        return ack

    # -- callback -----------------------------------------------------------

    def reconcile(self, body: Any) -> ReconcileOutcome:
        callback = parse_callback(body)
        outcome = self.reconciler.reconcile(callback)

        if outcome.applied:
            event = "payment.completed" if outcome.status == COMPLETED else "payment.failed"
            self.publish(
                event,
                {
                    "order_id": outcome.order_id,
                    "checkout_request_id": callback.checkout_request_id,
                    "receipt": outcome.receipt,
                    "result_code": callback.result_code,
                    "result_description": callback.result_description,
                },
                safe=True,
            )
        return outcome

    def handle_callback(self, body: Any) -> dict:
        """
        Provider-facing entry point. Always acknowledges receipt: the provider
        only needs to know the callback arrived, and an error status would
        just make it redeliver.
        """
        try:
            self.reconcile(body)
        except AmountMismatchError as e:
            logger.error(
                "AMOUNT MISMATCH, order left untouched: %s (expected=%s reported=%s)",
                e.message, e.expected, e.reported,
            )
            return dict(ACK_WITH_ISSUES)
        except NotFoundError as e:
            logger.warning("Callback for unknown transaction: %s", e.message)
            return dict(ACK_WITH_ISSUES)
        except CheckoutError as e:
            logger.error("mpesa_callback error: %s", e.message)
            return dict(ACK_WITH_ISSUES)
        except Exception:
            logger.exception("mpesa_callback unexpected error")
            return dict(ACK_WITH_ISSUES)
        return dict(ACK_OK)

    # -- follow-up ----------------------------------------------------------

    def list_stalled(self, older_than_minutes: int = 30, limit: int = 100) -> list[MpesaTransaction]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        return self.store.list_stalled_transactions(cutoff, limit=limit)
