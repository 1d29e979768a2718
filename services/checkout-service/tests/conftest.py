"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite file per test, built with the same
engine helper the service uses, and a stub payment provider.
"""
import os

os.environ.setdefault("EVENT_BACKEND", "none")

from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from checkout.coordinator import CheckoutCoordinator
from checkout.db import create_db_engine, init_schema, make_session_factory
from checkout.models import Order, OrderItem, Payment, MpesaTransaction
from checkout.store import OrderStore

ACCEPTED_ACK = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class StubGateway:
    """Records pushes instead of calling the provider."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.auth_calls = 0
        self.pushes: list[dict] = []

    async def authenticate(self) -> str:
        self.auth_calls += 1
        return "stub-access-token"

    async def initiate_push(self, **kwargs) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        self.pushes.append(kwargs)
        return dict(ACCEPTED_ACK)


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def published() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def coordinator(store, gateway, published) -> CheckoutCoordinator:
    def record(event_type: str, payload: dict, *, safe: bool = False) -> None:
        published.append((event_type, payload))

    return CheckoutCoordinator(
        store,
        gateway,
        shortcode="174379",
        callback_url="https://shop.example.com/mpesa_callback",
        publisher=record,
    )


@pytest.fixture
def client(coordinator):
    from checkout.main import app, get_coordinator

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def count_rows(session_factory) -> Callable[[Any], int]:
    def _count(model, **filters) -> int:
        with session_factory() as session:
            stmt = select(func.count()).select_from(model).filter_by(**filters)
            return session.execute(stmt).scalar_one()

    return _count


@pytest.fixture
def row_totals(count_rows) -> Callable[[], dict[str, int]]:
    def _totals() -> dict[str, int]:
        return {
            "orders": count_rows(Order),
            "order_items": count_rows(OrderItem),
            "payments": count_rows(Payment),
            "mpesa_transactions": count_rows(MpesaTransaction),
        }

    return _totals


@pytest.fixture
def mpesa_checkout() -> dict:
    return {
        "method": "mpesa",
        "amount": 1000,
        "cart": [{"id": 1, "quantity": 2, "price": 500}],
        "phone": "0712345678",
    }


@pytest.fixture
def cash_checkout() -> dict:
    return {
        "method": "cash",
        "amount": 1000,
        "cart": [{"id": 1, "quantity": 2, "price": 500}],
    }


@pytest.fixture
def make_callback() -> Callable[..., dict]:
    def _make(
        token: str,
        result_code: int = 0,
        amount: Any = 1000,
        receipt: str = "NLJ7RT61SV",
        transaction_date: int = 20191219102115,
        desc: str | None = None,
    ) -> dict:
        stk: dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": token,
            "ResultCode": result_code,
            "ResultDesc": desc
            or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
        }
        if result_code == 0:
            stk["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": transaction_date},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                ]
            }
        return {"Body": {"stkCallback": stk}}

    return _make
