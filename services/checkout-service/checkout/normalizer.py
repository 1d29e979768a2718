"""
Input normalization for checkout requests.

Everything here is pure: no database, no network. Each function either
returns a cleaned value or raises ValidationError with a message that can
be shown to the shopper as-is.
"""
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from .errors import ValidationError

CASH = "cash"
MPESA = "mpesa"

SUPPORTED_METHODS = frozenset({CASH, MPESA})
# methods whose payer is identified by a mobile-money phone number
PHONE_METHODS = frozenset({MPESA})
# methods confirmed later by a provider callback
ASYNC_METHODS = frozenset({MPESA})

COUNTRY_CODE = "254"
PHONE_RE = re.compile(r"^254[17]\d{8}$")
_NON_DIGITS = re.compile(r"\D")

CENTS = Decimal("0.01")
# NUMERIC(12, 2) holds at most 10 integer digits
MAX_MONEY = Decimal(10) ** 10


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        try:
            return (self.unit_price * self.quantity).quantize(CENTS)
        except InvalidOperation:
            raise ValidationError(f"Subtotal out of range (item {self.product_id})")


@dataclass(frozen=True)
class CheckoutRequest:
    method: str
    amount: Decimal
    lines: tuple[CartLine, ...]
    phone: Optional[str]

    @property
    def is_async(self) -> bool:
        return self.method in ASYNC_METHODS


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def to_money(raw: Any) -> Decimal:
    """Parse a currency value without ever going through float."""
    if raw is None or isinstance(raw, bool):
        raise ValidationError("Amount is required")
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {raw!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {raw!r}")
    if value.copy_abs() >= MAX_MONEY:
        raise ValidationError(f"Amount out of range: {raw!r}")
    try:
        return value.quantize(CENTS)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {raw!r}")


def parse_amount(raw: Any) -> Decimal:
    amount = to_money(raw)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


def normalize_method(raw: Any) -> str:
    method = str(raw or "").strip().lower()
    if not method:
        raise ValidationError("Missing required field: method")
    if method not in SUPPORTED_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}")
    return method


def normalize_phone(raw: Any, method: str) -> Optional[str]:
    """
    Strip everything but digits. For mobile-money methods, rewrite a leading
    national 0 to the country code and require 254 + (1|7) + 8 digits.
    """
    digits = _NON_DIGITS.sub("", str(raw)) if raw is not None else ""

    if method not in PHONE_METHODS:
        return digits or None

    if not digits:
        raise ValidationError("Phone number is required for mobile payments.")
    if digits.startswith("0"):
        digits = COUNTRY_CODE + digits[1:]
    if not PHONE_RE.match(digits):
        raise ValidationError("Invalid Kenyan phone number format.")
    return digits


def normalize_cart(raw: Any) -> tuple[CartLine, ...]:
    if not raw or isinstance(raw, (str, bytes, dict)):
        raise ValidationError("Cart must contain at least one item")

    lines = []
    for idx, item in enumerate(raw):
        product_id = _get(item, "id")
        quantity = _get(item, "quantity")
        price = _get(item, "price")
        if product_id is None or quantity is None or price is None:
            raise ValidationError(f"Invalid cart item structure at position {idx}")

        try:
            pid = int(product_id)
            qty = int(quantity)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError(f"Invalid cart item at position {idx}")
        if isinstance(product_id, bool) or pid != Decimal(str(product_id)):
            raise ValidationError(f"Product id must be a whole number at position {idx}")
        product_id = pid
        if isinstance(quantity, bool) or qty != Decimal(str(quantity)):
            raise ValidationError(f"Quantity must be a whole number (item {product_id})")
        if qty <= 0:
            raise ValidationError(f"Quantity must be positive (item {product_id})")

        unit_price = to_money(price)
        if unit_price < 0:
            raise ValidationError(f"Price must not be negative (item {product_id})")

        line = CartLine(product_id=product_id, quantity=qty, unit_price=unit_price)
        if line.subtotal >= MAX_MONEY:
            raise ValidationError(f"Subtotal out of range (item {product_id})")
        lines.append(line)
    return tuple(lines)


def cart_total(lines: Iterable[CartLine]) -> Decimal:
    return sum((line.subtotal for line in lines), Decimal("0.00"))


def normalize_checkout(payload: Any) -> CheckoutRequest:
    for field in ("method", "amount", "cart"):
        if _get(payload, field) is None:
            raise ValidationError(f"Missing required field: {field}")

    method = normalize_method(_get(payload, "method"))
    amount = parse_amount(_get(payload, "amount"))
    lines = normalize_cart(_get(payload, "cart"))
    phone = normalize_phone(_get(payload, "phone"), method)

    if amount != cart_total(lines):
        raise ValidationError(
            f"Amount {amount} does not match cart total {cart_total(lines)}"
        )
    if method in ASYNC_METHODS and amount != amount.to_integral_value():
        raise ValidationError("Mobile money amounts must be whole shillings")

    return CheckoutRequest(method=method, amount=amount, lines=lines, phone=phone)
