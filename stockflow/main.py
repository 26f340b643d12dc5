"""
stockflow: FastAPI エントリーポイント

CQRS に従い、Command (POST) と Query (GET) のエンドポイントを分離する。
注文確定の唯一の入口は POST /commands/orders (Saga を実行する)。
監査ログは GET /events でカーソル(sequence)を指定して読み出せる。
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .audit import AuditTrail
from .catalog import CatalogClient, CustomerLookup, PriceLookup
from .config import Settings
from .db import create_engine, create_schema, session_factory
from .errors import (
    ConcurrencyTimeoutError,
    InsufficientStockError,
    InvalidTransitionError,
    LookupUnavailableError,
    NotFoundError,
    OrderingError,
    PersistenceError,
    ValidationError,
)
from .guard import ConcurrencyGuard
from .inventory import InventoryLedger, InventoryRecord
from .inventory.sweeper import run_sweeper
from .order import Order, OrderStatus, OrderStore
from .publisher import EventPublisher
from .saga import OrderPlacementCoordinator

logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[OrderingError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (InsufficientStockError, 409),
    (InvalidTransitionError, 409),
    (ConcurrencyTimeoutError, 503),
    (PersistenceError, 503),
    (LookupUnavailableError, 503),
]


# ── Request Models ───────────────────────────────


class OrderLineRequest(BaseModel):
    sku: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    customer_id: str
    lines: list[OrderLineRequest]


class CancelOrderRequest(BaseModel):
    reason: str = ""


class ReceiveStockRequest(BaseModel):
    quantity: int


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    prices: PriceLookup | None = None,
    customers: CustomerLookup | None = None,
    run_background_sweeper: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env()

    engines = {}
    for url in (
        settings.inventory_database_url,
        settings.order_database_url,
        settings.audit_database_url,
    ):
        if url not in engines:
            engines[url] = create_engine(url)

    owns_redis = redis is None
    if redis is None:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    catalog = CatalogClient(settings.catalog_service_url, settings.customer_service_url, http_client)

    audit = AuditTrail(
        session_factory(engines[settings.audit_database_url]),
        EventPublisher(redis),
    )
    ledger = InventoryLedger(
        session_factory(engines[settings.inventory_database_url]),
        reservation_ttl=settings.reservation_ttl_seconds,
        audit=audit,
    )
    orders = OrderStore(session_factory(engines[settings.order_database_url]))
    coordinator = OrderPlacementCoordinator(
        ledger,
        orders,
        audit,
        ConcurrencyGuard(timeout=settings.lock_timeout_seconds),
        prices or catalog,
        customers or catalog,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        for engine in engines.values():
            await create_schema(engine)

        shutdown_event = asyncio.Event()
        sweeper = None
        if run_background_sweeper:
            sweeper = asyncio.create_task(
                run_sweeper(ledger, settings.sweep_interval_seconds, shutdown_event)
            )
        yield
        shutdown_event.set()
        if sweeper is not None:
            await sweeper
        await http_client.aclose()
        if owns_redis:
            await redis.aclose()
        for engine in engines.values():
            await engine.dispose()

    app = FastAPI(title="stockflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.audit = audit
    app.state.ledger = ledger
    app.state.orders = orders
    app.state.coordinator = coordinator

    @app.exception_handler(OrderingError)
    async def ordering_error_handler(request: Request, exc: OrderingError):
        status_code = next(
            (code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)),
            500,
        )
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
        )

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/commands/orders", status_code=201)
    async def cmd_place_order(req: PlaceOrderRequest, x_actor: str = Header("api")):
        """注文確定コマンド (Saga を実行する)"""
        order_id = await coordinator.place_order(
            req.customer_id,
            [(line.sku, line.quantity) for line in req.lines],
            actor=x_actor,
        )
        order = await coordinator.get_order(order_id)
        return _order_view(order)

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel_order(order_id: UUID, req: CancelOrderRequest, x_actor: str = Header("api")):
        """注文キャンセルコマンド"""
        order = await coordinator.cancel_order(order_id, reason=req.reason, actor=x_actor)
        return _order_view(order)

    @app.post("/commands/inventory/{sku}/receive")
    async def cmd_receive_stock(sku: str, req: ReceiveStockRequest, x_actor: str = Header("api")):
        """入荷コマンド"""
        record = await ledger.receive_stock(sku, req.quantity, actor=x_actor)
        return _inventory_view(record)

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        status: OrderStatus | None = None,
        customer_id: str | None = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        found = await orders.list_orders(status=status, customer_id=customer_id, limit=limit)
        return [_order_view(order) for order in found]

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: UUID):
        return _order_view(await orders.get_order(order_id))

    @app.get("/queries/inventory")
    async def query_list_inventory():
        return [_inventory_view(record) for record in await ledger.list_records()]

    @app.get("/queries/inventory/{sku}")
    async def query_get_inventory(sku: str):
        return _inventory_view(await ledger.get_record(sku))

    # ── Audit Log ────────────────────────────────

    @app.get("/events")
    async def get_events(
        since: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        events = await audit.load_events(since=since, limit=limit)
        return [event.model_dump(mode="json") for event in events]

    @app.get("/events/stream")
    async def stream_events(since: int = Query(0, ge=0)):
        """since 以降の全イベントを NDJSON で返す。"""

        async def body():
            async for event in audit.stream(since):
                yield json.dumps(event.model_dump(mode="json")) + "\n"

        return StreamingResponse(body(), media_type="application/x-ndjson")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "stockflow"}

    return app


def _order_view(order: Order) -> dict:
    return {
        "order_id": str(order.order_id),
        "customer_id": order.customer_id,
        "status": order.status.value,
        "status_reason": order.status_reason,
        "lines": [
            {
                "line_no": line.line_no,
                "sku": line.sku,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in order.lines
        ],
        "total_price": str(order.total_price),
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


def _inventory_view(record: InventoryRecord) -> dict:
    return {
        "sku": record.sku,
        "available": record.available,
        "reserved": record.reserved,
        "version": record.version,
        "updated_at": record.updated_at.isoformat(),
    }


app = create_app()
