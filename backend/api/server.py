# api/server.py
# ============================================================================
# ORDER RELAY: FASTAPI SERVER
# ============================================================================
# HTTP boundary of the order state machine: checkout, order lookup, the two
# webhook receivers, plus CORS, request timing and structured logging.
# ============================================================================

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings
from database import close_database, init_database
from pipeline.agents.fulfillment_client import IFulfillmentClient, ManufacturerClient
from pipeline.agents.payment_gateway import IPaymentGateway, StripePaymentGateway
from pipeline.errors import OrderRelayError
from pipeline.order_state_machine import OrderStateMachine
from schemas.orders import CheckoutRequest, CheckoutResponse, Order, Product
from storage.order_store import InMemoryOrderStore, IOrderStore, PostgresOrderStore
from tasks.reconciliation import get_reconciliation_stats, reconciliation_loop

SERVICE_NAME = "order-relay"


# ============================================================================
# LOGGING
# ============================================================================

def configure_logging(settings: Settings) -> None:
    """Configure structlog once for the whole process."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


logger = structlog.get_logger(component="server")


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_machine(request: Request) -> OrderStateMachine:
    return request.app.state.machine


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[IOrderStore] = None,
    payment_gateway: Optional[IPaymentGateway] = None,
    fulfillment_client: Optional[IFulfillmentClient] = None,
) -> FastAPI:
    """Build the FastAPI app. Collaborators not passed in are built from
    ``settings`` at startup."""
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", env=settings.env)

        order_store = store
        uses_database = False
        if order_store is None:
            if settings.database_url:
                await init_database(settings)
                order_store = PostgresOrderStore()
                uses_database = True
            else:
                logger.warning("database_not_configured", store="in_memory")
                order_store = InMemoryOrderStore()

        fulfillment = fulfillment_client or ManufacturerClient(settings)
        machine = OrderStateMachine(
            store=order_store,
            payment_gateway=payment_gateway or StripePaymentGateway(settings),
            fulfillment_client=fulfillment,
            settings=settings,
        )
        app.state.machine = machine
        app.state.settings = settings

        sweep = None
        if settings.reconciliation_enabled:
            sweep = asyncio.create_task(reconciliation_loop(machine, settings))

        yield

        logger.info("server_stopping")
        if sweep is not None:
            sweep.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep
        await fulfillment.close()
        if uses_database:
            await close_database()

    app = FastAPI(
        title="Order Relay",
        description="Checkout, payment confirmation and fulfillment relay",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # MIDDLEWARE
    # ------------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Request id, timing header and one access log line per request."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration = (time.perf_counter() - start) * 1000
            response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
            response.headers["X-Request-ID"] = request_id
            logger.info("http_request",
                        method=request.method,
                        path=request.url.path,
                        status=response.status_code,
                        latency_ms=round(duration, 2))
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

    # ------------------------------------------------------------------------
    # EXCEPTION HANDLERS
    # ------------------------------------------------------------------------

    @app.exception_handler(OrderRelayError)
    async def order_relay_error(request: Request, exc: OrderRelayError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("request_failed",
            path=request.url.path,
            error=exc.message,
            error_type=type(exc).__name__,
            order_id=exc.order_id)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # ------------------------------------------------------------------------
    # ENDPOINTS
    # ------------------------------------------------------------------------

    @app.get("/")
    async def root():
        return {"ok": True, "service": SERVICE_NAME}

    @app.get("/products", response_model=List[Product])
    async def list_products(machine: OrderStateMachine = Depends(get_machine)):
        return await machine.list_products()

    @app.post("/checkout", response_model=CheckoutResponse, status_code=201)
    async def checkout(
        body: CheckoutRequest,
        machine: OrderStateMachine = Depends(get_machine),
    ):
        order, session = await machine.checkout(body.email, body.items)
        return CheckoutResponse(
            order_id=order.id,
            redirect_url=session.redirect_url,
            session_id=session.session_id,
        )

    @app.post("/webhooks/payment")
    async def payment_webhook(request: Request, machine: OrderStateMachine = Depends(get_machine)):
        raw_body = await request.body()
        await machine.handle_payment_webhook(raw_body, request.headers.get("stripe-signature"))
        return {"received": True}

    @app.post("/webhooks/manufacturer")
    async def manufacturer_webhook(request: Request, machine: OrderStateMachine = Depends(get_machine)):
        raw_body = await request.body()
        await machine.handle_manufacturer_webhook(raw_body, request.headers.get("x-signature"))
        return {"ok": True}

    @app.get("/orders/{order_id}", response_model=Order)
    async def get_order(order_id: str, machine: OrderStateMachine = Depends(get_machine)):
        return await machine.get_order(order_id)

    @app.get("/reconciliation/stats")
    async def reconciliation_stats(request: Request, machine: OrderStateMachine = Depends(get_machine)):
        return await get_reconciliation_stats(machine, request.app.state.settings)

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    settings = Settings.from_env()
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
