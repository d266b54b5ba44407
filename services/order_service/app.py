"""Order Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from services.notification_service.dispatcher import NotificationDispatcher
from services.notification_service.kinds import NotificationKind
from services.notification_service.models import JobStatus
from services.notification_service.queue import PersistentNotificationQueue
from services.notification_service.store import JobStore, NotificationLogStore
from services.notification_service.templates import TemplateRenderer
from services.notification_service.transports import build_email_transport, build_sms_transport
from shared.config import Settings
from shared.database import Database
from shared.exceptions import InvalidOrder, InvalidTransition, OrderNotFound
from shared.scheduler import PeriodicTask
from shared.schemas import OrderSnapshot

from .lifecycle import OrderLifecycle
from .repository import order_loader
from .schemas import (
    CountResponse,
    NotificationJobResponse,
    NotificationLogResponse,
    OrderDraft,
    UpdateOrderRequest,
)

# Settings
settings = Settings(
    service_name="order-service",
    service_port=8001,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database
database = Database(settings.database_url)

# Built in the lifespan
http_client: Optional[httpx.AsyncClient] = None
lifecycle: Optional[OrderLifecycle] = None
notification_queue: Optional[PersistentNotificationQueue] = None
notification_history: Optional[NotificationLogStore] = None
sweeper: Optional[PeriodicTask] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global http_client, lifecycle, notification_queue, notification_history, sweeper

    # Startup
    logger.info("Starting Order Service...")

    await database.wait_until_ready()

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    dispatcher = NotificationDispatcher(
        email_transport=build_email_transport(settings, http_client),
        sms_transport=build_sms_transport(settings, http_client),
        renderer=TemplateRenderer.from_settings(settings),
        bcc=settings.bcc_list,
    )
    notification_history = NotificationLogStore(database.session_factory)
    notification_queue = PersistentNotificationQueue(
        jobs=JobStore(database.session_factory),
        dispatcher=dispatcher,
        order_loader=order_loader(database.session_factory),
        history=notification_history,
        create_tables=database.create_tables,
        retry_ceiling=settings.notification_retry_ceiling,
        batch_size=settings.notification_sweep_batch_size,
        claim_lease=timedelta(seconds=settings.notification_claim_lease_seconds),
    )
    lifecycle = OrderLifecycle(
        session_factory=database.session_factory,
        dispatcher=dispatcher,
        queue=notification_queue,
        history=notification_history,
        order_number_prefix=settings.order_number_prefix,
        processing_delay=timedelta(minutes=settings.processing_email_delay_minutes),
        follow_up_delay=timedelta(days=settings.follow_up_delay_days),
        idempotent_scheduling=settings.idempotent_scheduling,
    )

    await notification_queue.init()

    # Start the sweep
    sweeper = PeriodicTask(
        name="notification-sweep",
        callback=notification_queue.sweep,
        interval=settings.notification_sweep_interval_seconds,
    )
    await sweeper.start()

    logger.info("Order Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Order Service...")
    if sweeper:
        await sweeper.stop()
    if http_client:
        await http_client.aclose()
    await database.close()


app = FastAPI(title="Order Service", lifespan=lifespan)


# Error mapping
@app.exception_handler(InvalidTransition)
@app.exception_handler(InvalidOrder)
async def bad_request_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(OrderNotFound)
async def not_found_handler(request: Request, exc: OrderNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Dependencies
def get_lifecycle() -> OrderLifecycle:
    if lifecycle is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return lifecycle


def get_queue() -> PersistentNotificationQueue:
    if notification_queue is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return notification_queue


def get_history() -> NotificationLogStore:
    if notification_history is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return notification_history


# API Endpoints
@app.post("/orders", response_model=OrderSnapshot, status_code=201)
async def create_order(
    request: OrderDraft,
    orders: OrderLifecycle = Depends(get_lifecycle)
):
    """
    Create a new order.

    The order is stored as confirmed, the confirmation email goes out
    immediately and the "preparing your order" email is scheduled.
    """
    return await orders.create_order(request)


@app.get("/orders/{order_number}", response_model=OrderSnapshot)
async def get_order(order_number: str, orders: OrderLifecycle = Depends(get_lifecycle)):
    """Get order by number."""
    return await orders.get_order(order_number)


@app.get("/admin/orders", response_model=List[OrderSnapshot])
async def list_orders(limit: int = 100, orders: OrderLifecycle = Depends(get_lifecycle)):
    """Most recent orders first."""
    return await orders.list_orders(limit)


@app.patch("/admin/orders/{order_number}", response_model=OrderSnapshot)
async def update_order(
    order_number: str,
    request: UpdateOrderRequest,
    orders: OrderLifecycle = Depends(get_lifecycle)
):
    """Update status and/or tracking fields of an order."""
    tracking = request.tracking_fields()
    if request.order_status is None and not tracking:
        raise HTTPException(status_code=400, detail="No updates provided")

    return await orders.on_status_change(order_number, request.order_status, tracking)


@app.get("/admin/orders/{order_number}/notifications", response_model=List[NotificationLogResponse])
async def get_notification_history(
    order_number: str,
    history: NotificationLogStore = Depends(get_history)
):
    """Dispatch history for an order."""
    return await history.list_for_order(order_number)


@app.get("/admin/notification-jobs", response_model=List[NotificationJobResponse])
async def list_notification_jobs(
    status: Optional[JobStatus] = None,
    order_number: Optional[str] = None,
    limit: int = 100,
    queue: PersistentNotificationQueue = Depends(get_queue)
):
    """Delayed notification jobs, soonest first."""
    return await queue.list_jobs(status=status, order_number=order_number, limit=limit)


@app.delete("/admin/orders/{order_number}/notification-jobs/{kind}", response_model=CountResponse)
async def cancel_notification_jobs(
    order_number: str,
    kind: NotificationKind,
    queue: PersistentNotificationQueue = Depends(get_queue)
):
    """Cancel pending jobs of one kind for an order."""
    return CountResponse(count=await queue.cancel(order_number, kind))


@app.post("/admin/notification-jobs/retry-failed", response_model=CountResponse)
async def retry_failed_notification_jobs(
    limit: int = 100,
    queue: PersistentNotificationQueue = Depends(get_queue)
):
    """Give terminally failed jobs a fresh attempt budget."""
    return CountResponse(count=await queue.retry_failed(limit))


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "sweeper_running": bool(sweeper and sweeper.running),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
