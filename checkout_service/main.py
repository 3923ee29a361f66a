import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .config import Settings, load_settings
from .database import Base, make_engine, make_session_factory
from .errors import AuthenticationError, CheckoutError, ErrorKind
from .gateway import StripeGateway
from .messaging.producer import EventPublisher
from .models import Order
from .money import to_display
from .orders import OrderOrchestrator
from .schemas import CreateIntentRequest, OrderCreateRequest
from .webhooks import WebhookHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

router = APIRouter()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


# --- Dependencies ---

def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """The upstream auth layer forwards the signed-in user in ``X-User-Id``."""
    if not x_user_id:
        raise AuthenticationError()
    return x_user_id


def orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orders


# --- Serialization ---

def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "userId": order.user_id,
        "total": to_display(order.total_cents),
        "status": order.status,
        "addressId": order.address_id,
        "paymentIntentId": order.payment_intent_id,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "quantity": item.quantity,
                "price": to_display(item.price_cents),
            }
            for item in order.items
        ],
    }


# --- Endpoints ---

@router.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Checkout service is running"}


@router.post("/api/v1/payments/create-intent")
def create_payment_intent(
    req: CreateIntentRequest,
    user_id: str = Depends(current_user_id),
    orders: OrderOrchestrator = Depends(orchestrator),
):
    intent = orders.prepare_payment(user_id, req.items, req.address_id, req.address)
    return {"clientSecret": intent.client_secret, "paymentIntentId": intent.id}


@router.post("/api/v1/orders", status_code=201)
def create_order(
    req: OrderCreateRequest,
    user_id: str = Depends(current_user_id),
    orders: OrderOrchestrator = Depends(orchestrator),
):
    address_or_id = req.address_id or req.address
    order = orders.create_order(user_id, req.items, address_or_id, req.payment_intent_id)
    return {"success": True, "order": serialize_order(order)}


@router.get("/api/v1/orders")
def list_orders(user_id: str = Depends(current_user_id), orders: OrderOrchestrator = Depends(orchestrator)):
    return {"orders": [serialize_order(o) for o in orders.list_orders(user_id)]}


@router.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, user_id: str = Depends(current_user_id), orders: OrderOrchestrator = Depends(orchestrator)):
    return {"order": serialize_order(orders.get_order(user_id, order_id))}


@router.post("/api/v1/payments/webhook")
async def payment_webhook(request: Request):
    # Signature verification needs the body exactly as it was sent.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    handler: WebhookHandler = request.app.state.webhooks
    return await run_in_threadpool(handler.handle, payload, signature)


# --- Error handling ---

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation failed",
                "type": ErrorKind.VALIDATION_ERROR.value,
                "details": jsonable_encoder(details),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "type": "INTERNAL_ERROR"})


# --- App factory ---

def create_app(settings: Optional[Settings] = None, gateway=None, publisher=None) -> FastAPI:
    """Build the app with explicitly constructed clients.

    ``gateway`` and ``publisher`` default to the Stripe and RabbitMQ clients
    described by ``settings``; tests pass fakes instead.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    # Create database tables if they don't exist.
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)

    if gateway is None:
        gateway = StripeGateway(settings.stripe_secret_key, timeout=settings.gateway_timeout_seconds)
    if publisher is None and settings.rabbitmq_url:
        publisher = EventPublisher(settings.rabbitmq_url)

    orders = OrderOrchestrator(
        session_factory,
        gateway,
        publisher=publisher,
        currency=settings.currency,
        max_attempts=settings.order_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Checkout service starting (currency=%s)", settings.currency)
        yield
        close = getattr(gateway, "close", None)
        if close is not None:
            close()
        engine.dispose()
        logger.info("Checkout service stopped")

    app = FastAPI(title="Checkout service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.orders = orders
    app.state.webhooks = WebhookHandler(session_factory, gateway, settings.stripe_webhook_secret, orders=orders)

    register_exception_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "checkout_service.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
