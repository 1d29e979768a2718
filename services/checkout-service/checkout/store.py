"""
Durable storage for the order aggregate: order, line items, payment record
and (for mobile money) the pending provider transaction.

Every write path goes through OrderStore.unit_of_work(), which owns one
session and one transaction. Either everything written inside the block is
committed, or nothing is.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, selectinload

from .errors import PersistenceError
from .models import (
    Order,
    OrderItem,
    Payment,
    MpesaTransaction,
    INITIATED,
)

logger = logging.getLogger(__name__)


class OrderWriter:
    """Operations available inside a single unit of work."""

    def __init__(self, session: Session):
        self.session = session

    def create_order(self, total: Decimal, status: str) -> int:
        order = Order(total_price=total, status=status)
        self.session.add(order)
        self.session.flush()  # get order.id
        return order.id

    def add_item(self, order_id: int, product_id: int, qty: int, subtotal: Decimal) -> None:
        self.session.add(
            OrderItem(order_id=order_id, product_id=product_id, quantity=qty, subtotal=subtotal)
        )
        self.session.flush()

    def create_payment(
        self,
        order_id: int,
        amount: Decimal,
        method: str,
        phone: Optional[str],
        status: str,
        transaction_id: str,
    ) -> None:
        self.session.add(
            Payment(
                order_id=order_id,
                amount=amount,
                payment_method=method,
                phone_number=phone,
                status=status,
                transaction_id=transaction_id,
            )
        )
        self.session.flush()

    def create_pending_transaction(self, order_id: int, phone: str, amount: Decimal, token: str) -> None:
        self.session.add(
            MpesaTransaction(
                order_id=order_id,
                phone=phone,
                amount=amount,
                status=INITIATED,
                checkout_request_id=token,
            )
        )
        self.session.flush()

    def attach_correlation_token(self, order_id: int, token: str) -> None:
        order = self.session.get(Order, order_id)
        if order is None:
            raise PersistenceError(f"Order {order_id} vanished mid-transaction")
        order.checkout_request_id = token
        self.session.flush()

    def lock_pending_transaction(self, token: str) -> Optional[MpesaTransaction]:
        """
        Fetch the pending transaction for a correlation token and hold an
        exclusive row lock on it until the unit of work ends.
        """
        stmt = (
            select(MpesaTransaction)
            .where(MpesaTransaction.checkout_request_id == token)
            .with_for_update()
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_order(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def get_payment(self, order_id: int, *, for_update: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def unit_of_work(self) -> Iterator[OrderWriter]:
        session = self._session_factory()
        try:
            with session.begin():
                yield OrderWriter(session)
        except SQLAlchemyError as e:
            logger.exception("Unit of work rolled back: %r", e)
            raise PersistenceError("Database error") from e
        finally:
            session.close()

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._session_factory() as session:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items), selectinload(Order.payment))
            )
            try:
                return session.execute(stmt).scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.exception("Order lookup failed order_id=%s", order_id)
                raise PersistenceError("Database error") from e

    def get_pending_transaction(self, order_id: int) -> Optional[MpesaTransaction]:
        with self._session_factory() as session:
            stmt = select(MpesaTransaction).where(MpesaTransaction.order_id == order_id)
            try:
                return session.execute(stmt).scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.exception("Pending transaction lookup failed order_id=%s", order_id)
                raise PersistenceError("Database error") from e

    def list_stalled_transactions(self, older_than: datetime, limit: int = 100) -> list[MpesaTransaction]:
        """Transactions still waiting on a provider callback since before `older_than`."""
        with self._session_factory() as session:
            stmt = (
                select(MpesaTransaction)
                .where(MpesaTransaction.status == INITIATED, MpesaTransaction.created_at < older_than)
                .order_by(MpesaTransaction.created_at)
                .limit(limit)
            )
            try:
                return list(session.execute(stmt).scalars())
            except SQLAlchemyError as e:
                logger.exception("Stalled transaction listing failed")
                raise PersistenceError("Database error") from e
