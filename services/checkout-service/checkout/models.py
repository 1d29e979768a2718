from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Numeric, ForeignKey, Integer, DateTime, Text, func, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

# Order.status
ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"
ORDER_FAILED = "failed"

# Order.payment_status
UNPAID = "unpaid"
PAID = "paid"
PAYMENT_FAILED = "failed"

# Payment.status / MpesaTransaction.status
PAYMENT_PENDING = "pending"
INITIATED = "initiated"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    # money => NUMERIC, not FLOAT
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ORDER_PENDING, nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), default=UNPAID, nullable=False)
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    payment: Mapped[Optional["Payment"]] = relationship(back_populates="order", cascade="all, delete-orphan")
    mpesa_transaction: Mapped[Optional["MpesaTransaction"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # unit price x quantity at checkout time; historical, never recomputed
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=PAYMENT_PENDING, nullable=False)  # pending | initiated | completed | failed
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    transaction_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)  # provider receipt
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)  # correlation token
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="payment")


class MpesaTransaction(Base):
    __tablename__ = "mpesa_transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=INITIATED, nullable=False)  # initiated | completed | failed
    checkout_request_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="mpesa_transaction")


# The stalled-transaction sweep filters on both columns
Index("ix_mpesa_transactions_status_created", MpesaTransaction.status, MpesaTransaction.created_at)
