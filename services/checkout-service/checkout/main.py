import os
import json
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool

from .coordinator import CheckoutCoordinator, ACK_WITH_ISSUES
from .db import DATABASE_URL, DB_SCHEMA, create_db_engine, make_session_factory, init_schema
from .errors import CheckoutError, GatewayError
from .gateway import MpesaGateway
from .schemas import (
    CallbackAck,
    CheckoutIn,
    CheckoutOut,
    InitiateIn,
    InitiateOut,
    OrderItemOut,
    OrderOut,
    StalledTransactionOut,
)
from .store import OrderStore
from shared.events import publish
from shared.security import require_admin

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("checkout-service")

MPESA_TIMEOUT = float(os.getenv("MPESA_TIMEOUT", "30"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
INIT_SCHEMA = os.getenv("INIT_SCHEMA", "false").lower() == "true"

_http_client: httpx.AsyncClient | None = None
_coordinator: CheckoutCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    One engine (and its connection pool) and one HTTP client per process,
    created here and torn down on shutdown.
    """
    global _http_client, _coordinator
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")

    engine = create_db_engine(DATABASE_URL, DB_SCHEMA)
    if INIT_SCHEMA:
        init_schema(engine, DB_SCHEMA)

    _http_client = httpx.AsyncClient(timeout=MPESA_TIMEOUT)
    _coordinator = CheckoutCoordinator(
        OrderStore(make_session_factory(engine)),
        MpesaGateway.from_env(_http_client),
        publisher=publish,
    )
    yield
    _coordinator = None
    try:
        await _http_client.aclose()
    finally:
        engine.dispose()


app = FastAPI(title="checkout-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator() -> CheckoutCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _coordinator


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if isinstance(exc, GatewayError):
        logger.error("%s %s provider failure: %s response=%s", request.method, request.url.path, exc.message, exc.response)
    elif exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg', 'invalid')}" if where else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.post("/process_payment", response_model=CheckoutOut)
def process_payment(payload: CheckoutIn, coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    result = coordinator.checkout(payload)
    return CheckoutOut(
        order_id=result.order_id,
        transaction_id=result.transaction_id,
        checkout_request_id=result.checkout_request_id,
    )


@app.post("/mpesa_initiate", response_model=InitiateOut)
async def mpesa_initiate(payload: InitiateIn, coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    try:
        ack = await coordinator.initiate_payment(payload.order_id)
    except GatewayError as e:
        # order stays processing/initiated; only the callback settles it
        logger.error("mpesa_initiate error order_id=%s: %s response=%s", payload.order_id, e.message, e.response)
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": "Failed to initiate STK push"},
        )
    return InitiateOut(response=ack)


@app.post("/mpesa_callback", response_model=CallbackAck)
async def mpesa_callback(request: Request, coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    raw = await request.body()
    try:
        body = json.loads(raw or b"null")
    except ValueError:
        logger.error("mpesa_callback error: body is not JSON (%d bytes)", len(raw))
        return dict(ACK_WITH_ISSUES)
    return await run_in_threadpool(coordinator.handle_callback, body)


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, coordinator: CheckoutCoordinator = Depends(get_coordinator)):
    order = coordinator.store.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Not found")

    items = [
        OrderItemOut(product_id=i.product_id, quantity=i.quantity, subtotal=float(i.subtotal))
        for i in order.items
    ]
    return OrderOut(
        id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        total=float(order.total_price),
        checkout_request_id=order.checkout_request_id,
        payment_method=order.payment.payment_method if order.payment else None,
        transaction_id=order.payment.transaction_id if order.payment else None,
        items=items,
    )


@app.get("/admin/transactions/stalled", response_model=list[StalledTransactionOut])
def stalled_transactions(
    older_than_minutes: int = Query(default=30, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
    claims: dict = Depends(require_admin),
    coordinator: CheckoutCoordinator = Depends(get_coordinator),
):
    return coordinator.list_stalled(older_than_minutes, limit=limit)


@app.get("/health")
def health():
    return {"ok": True}
