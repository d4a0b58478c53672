"""
HTTP and WebSocket surface of the order assignment service.

    /api/staff          staff directory and availability
    /api/orders         orders, status moves, assignment and reassignment
    /api/assignment     load statistics, waiting queue, round-robin pointers
    /api/scheduler      daily pointer reset job
    /ws/{channel_key}   live events for staff_<id>, manager_<id>, branch_<id>
    /health             database, transport and scheduler checks
"""

import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import ResetRunner, get_settings, setup_logging
from orderflow.core.exceptions import AssignmentError
from orderflow.database import async_session_maker, engine, get_db, init_db
from orderflow.models import OrderStatus
from orderflow.schemas import (
    AssignmentResponse,
    AssignRequest,
    AvailabilityUpdate,
    ErrorResponse,
    HealthResponse,
    HistoryEntry,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    PointerResponse,
    QueueEntryResponse,
    ResetRequest,
    ResetResponse,
    SchedulerJobStatus,
    SchedulerRunResponse,
    StaffAction,
    StaffCreate,
    StaffResponse,
    StatsResponse,
    StatusUpdate,
)
from orderflow.services.assignment import AssignmentResult, AssignmentService, get_assignment_service
from orderflow.services.notifications import get_notification_fanout, get_notification_transport
from orderflow.services.notifications.websocket import ws_manager
from orderflow.services.orders import OrderService, get_order_service
from orderflow.services.scheduler import ResetScheduler, get_reset_scheduler

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

CHANNEL_KEY_PATTERN = re.compile(r"^(staff|manager|branch)_[\w\-]{1,64}$")

ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


# --- application lifecycle ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, pick up waiting orders, start the relay and reset loop."""
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version} "
        f"(env={settings.env_mode.value}, reset_runner={settings.reset_runner.value})"
    )

    await init_db()

    async with async_session_maker() as db:
        await get_order_service().recover(db)

    transport = get_notification_transport()
    logger.info(f"Notifications via {transport.provider_name}")

    relay = None
    if settings.use_real_services:
        from orderflow.services.notifications.real import RedisChannelRelay

        problems = settings.validate_production_config()
        if problems:
            logger.warning(f"Unsafe settings for {settings.env_mode.value}: {problems}")

        relay = RedisChannelRelay()
        await relay.start()

    scheduler = get_reset_scheduler()
    if settings.reset_runner == ResetRunner.INPROCESS:
        await scheduler.start()

    yield

    logger.info("Stopping background work")
    if scheduler.running:
        await scheduler.stop()
    if relay is not None:
        await relay.stop()
    # Let in-flight notifications finish before the transport goes away
    await get_notification_fanout().drain()
    await transport.close()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description=(
        "Capacity-aware round-robin order assignment with manager overrides, "
        "assignment audit trail and real-time staff notifications."
    ),
    version=settings.app_version,
    lifespan=lifespan,
)

# Socket and dashboard clients are served from other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def assignment_response(result: AssignmentResult) -> AssignmentResponse:
    return AssignmentResponse.model_validate(result, from_attributes=True)


def scheduler_status(scheduler: ResetScheduler) -> SchedulerJobStatus:
    return SchedulerJobStatus(runner=settings.reset_runner.value, **scheduler.status())


# --- root & health ---

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
        "stats": "/api/assignment/stats?hotel_id=<hotel>",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    db: AsyncSession = Depends(get_db),
    scheduler: ResetScheduler = Depends(get_reset_scheduler),
) -> HealthResponse:
    """Check the database, the notification transport and the reset loop."""
    try:
        await db.execute(select(1))
        database = "healthy"
    except Exception as e:
        database = f"unhealthy: {e}"
        logger.error(f"Health check: database unreachable: {e}")

    transport_ok = await get_notification_transport().health_check()
    notification_transport = "healthy" if transport_ok else "unhealthy"

    if settings.reset_runner == ResetRunner.INPROCESS:
        reset_scheduler = "healthy" if scheduler.running else "stopped"
    else:
        # Driven by Celery beat, or switched off
        reset_scheduler = settings.reset_runner.value

    degraded = (
        database != "healthy"
        or not transport_ok
        or reset_scheduler == "stopped"
    )
    return HealthResponse(
        status="degraded" if degraded else "operational",
        database=database,
        notification_transport=notification_transport,
        reset_scheduler=reset_scheduler,
        timestamp=datetime.now(),
    )


# --- staff ---

@app.post(
    "/api/staff",
    response_model=StaffResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Staff"],
    summary="Register Staff Member",
)
async def create_staff(
    staff_data: StaffCreate,
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
    orders: OrderService = Depends(get_order_service),
) -> StaffResponse:
    """Register a staff member; waiting orders of the branch may go to them at once."""
    staff = await service.directory.create_staff(
        db,
        name=staff_data.name,
        hotel_id=staff_data.hotel_id,
        branch_id=staff_data.branch_id,
        role=staff_data.role,
        manager_id=staff_data.manager_id,
        max_orders_capacity=staff_data.max_orders_capacity,
        is_available=staff_data.is_available,
    )
    staff_id = staff.id
    await orders.drain_queue(db, staff_data.hotel_id, staff_data.branch_id)
    return StaffResponse.model_validate(await service.directory.get_staff(db, staff_id))


@app.get(
    "/api/staff",
    response_model=list[StaffResponse],
    tags=["Staff"],
    summary="List Staff",
)
async def list_staff(
    hotel_id: Optional[str] = Query(None),
    branch_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> list[StaffResponse]:
    staff = await service.directory.list_staff(db, hotel_id, branch_id)
    return [StaffResponse.model_validate(s) for s in staff]


@app.get(
    "/api/staff/{staff_id}",
    response_model=StaffResponse,
    responses=ERROR_RESPONSES,
    tags=["Staff"],
)
async def get_staff(
    staff_id: int,
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> StaffResponse:
    """Get a staff member with current load."""
    return StaffResponse.model_validate(await service.directory.get_staff(db, staff_id))


@app.patch(
    "/api/staff/{staff_id}/availability",
    response_model=StaffResponse,
    responses=ERROR_RESPONSES,
    tags=["Staff"],
    summary="Toggle Availability",
)
async def update_availability(
    staff_id: int,
    update: AvailabilityUpdate,
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
    orders: OrderService = Depends(get_order_service),
) -> StaffResponse:
    """
    Mark a staff member available or unavailable. Unavailable staff keep
    their current orders but receive no new ones; a staff member coming
    back picks up waiting orders.
    """
    staff = await service.set_staff_availability(db, staff_id, update.is_available)
    if update.is_available:
        await orders.drain_queue(db, staff.hotel_id, staff.branch_id)
        staff = await service.directory.get_staff(db, staff_id)
    return StaffResponse.model_validate(staff)


@app.delete(
    "/api/staff/{staff_id}",
    responses=ERROR_RESPONSES,
    tags=["Staff"],
    summary="Remove Staff Member",
)
async def remove_staff(
    staff_id: int,
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> dict[str, Any]:
    """Remove a staff member. Refused while they still hold active orders."""
    await service.directory.remove_staff(db, staff_id)
    return {"success": True, "staff_id": staff_id}


# --- orders ---

@app.post(
    "/api/orders",
    response_model=OrderCreateResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderCreateResponse:
    """
    Place an order and assign it to the next staff member in rotation.

    If every staff member is at capacity the order is still created and
    waits in the branch queue; ``assignment_error`` says why and
    ``queue_position`` where it stands.
    """
    logger.info(f"Creating order for {order_data.hotel_id}/{order_data.branch_id}")

    placement = await orders.create_order(
        db,
        hotel_id=order_data.hotel_id,
        branch_id=order_data.branch_id,
        table_number=order_data.table_number,
        items=[item.model_dump() for item in order_data.items],
        total_amount=order_data.total_amount,
        priority=order_data.priority,
        auto_assign=order_data.auto_assign,
    )

    if placement.assigned:
        message = f"Order assigned to {placement.assignment.staff_name}"
    elif placement.queued:
        message = f"Order placed; waiting for available staff (position {placement.queue_position})"
    else:
        message = "Order placed"

    return OrderCreateResponse(
        success=True,
        message=message,
        order=OrderResponse.model_validate(placement.order),
        assignment=assignment_response(placement.assignment) if placement.assignment else None,
        assignment_error=placement.assignment_error,
        queue_position=placement.queue_position,
    )


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    hotel_id: Optional[str] = Query(None),
    branch_id: Optional[str] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    staff_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Retrieve paginated list of orders."""
    total, page = await orders.list_orders(
        db,
        hotel_id=hotel_id,
        branch_id=branch_id,
        status=status,
        staff_id=staff_id,
        skip=skip,
        limit=limit,
    )
    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in page],
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await orders.get_order(db, order_id))


@app.get(
    "/api/orders/{order_id}/history",
    response_model=list[HistoryEntry],
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Assignment History",
)
async def order_history(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> list[HistoryEntry]:
    return [HistoryEntry.model_validate(h) for h in await orders.history(db, order_id)]


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Update Order Status",
)
async def update_order_status(
    order_id: int,
    update: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """
    Move an order along pending -> preparing -> ready -> served -> completed.
    Any open order may be cancelled. Completion and cancellation free the
    assignee's capacity.
    """
    order = await orders.update_status(db, order_id, update.status)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/orders/{order_id}/acknowledge",
    response_model=OrderResponse,
    responses={403: {"model": ErrorResponse}, **ERROR_RESPONSES},
    tags=["Orders"],
)
async def acknowledge_order(
    order_id: int,
    action: StaffAction,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """The assigned staff member confirms the order."""
    return OrderResponse.model_validate(await orders.acknowledge(db, order_id, action.staff_id))


@app.post(
    "/api/orders/{order_id}/viewed",
    response_model=OrderResponse,
    responses={403: {"model": ErrorResponse}, **ERROR_RESPONSES},
    tags=["Orders"],
)
async def order_viewed(
    order_id: int,
    action: StaffAction,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """The assigned staff member opened the order."""
    return OrderResponse.model_validate(await orders.mark_viewed(db, order_id, action.staff_id))


# --- assignment ---

@app.post(
    "/api/orders/{order_id}/assign",
    response_model=AssignmentResponse,
    responses={503: {"model": ErrorResponse}, **ERROR_RESPONSES},
    tags=["Assignment"],
    summary="Automatic Assignment",
)
async def assign_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> AssignmentResponse:
    """
    Assign an unassigned order to the next staff member in rotation. When
    nobody has capacity the order stays queued and 503 is returned.
    """
    return assignment_response(await orders.assign(db, order_id))


@app.put(
    "/api/orders/{order_id}/assign/{staff_id}",
    response_model=AssignmentResponse,
    responses=ERROR_RESPONSES,
    tags=["Assignment"],
    summary="Manual Assignment",
)
async def manual_assign_order(
    order_id: int,
    staff_id: int,
    body: Optional[AssignRequest] = None,
    allow_reassign: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> AssignmentResponse:
    """
    Hand an order to a specific staff member. The order becomes urgent,
    leaves the waiting queue, and the round-robin rotation is left untouched.
    """
    body = body or AssignRequest()
    result = await orders.manual_assign(
        db,
        order_id,
        staff_id,
        reason=body.reason,
        actor=body.actor,
        allow_reassign=allow_reassign,
    )
    return assignment_response(result)


@app.put(
    "/api/orders/{order_id}/reassign/{staff_id}",
    response_model=AssignmentResponse,
    responses=ERROR_RESPONSES,
    tags=["Assignment"],
    summary="Reassign Order",
)
async def reassign_order(
    order_id: int,
    staff_id: int,
    body: Optional[AssignRequest] = None,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> AssignmentResponse:
    """Move an assigned order to another staff member."""
    body = body or AssignRequest()
    result = await orders.reassign(db, order_id, staff_id, reason=body.reason, actor=body.actor)
    return assignment_response(result)


@app.get(
    "/api/assignment/stats",
    response_model=StatsResponse,
    tags=["Assignment"],
    summary="Assignment Statistics",
)
async def assignment_stats(
    hotel_id: str = Query(..., min_length=1),
    branch_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> StatsResponse:
    """Staff load and recent assignments for a hotel or one branch."""
    return StatsResponse(**await service.stats(db, hotel_id, branch_id))


@app.get(
    "/api/assignment/queue",
    response_model=list[QueueEntryResponse],
    tags=["Assignment"],
    summary="Waiting Queue",
)
async def waiting_queue(
    hotel_id: str = Query(..., min_length=1),
    branch_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> list[QueueEntryResponse]:
    """Orders of one branch waiting for capacity, in the order they will be served."""
    entries = await orders.queue.list_branch(db, hotel_id, branch_id)
    return [QueueEntryResponse.model_validate(e) for e in entries]


@app.get(
    "/api/assignment/round-robin",
    response_model=list[PointerResponse],
    tags=["Assignment"],
    summary="Round-Robin Pointers",
)
async def round_robin_pointers(
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> list[PointerResponse]:
    pointers = await service.allocator.list_pointers(db)
    return [PointerResponse.model_validate(p) for p in pointers]


@app.post(
    "/api/assignment/round-robin/reset",
    response_model=ResetResponse,
    tags=["Assignment"],
    summary="Reset Round-Robin",
)
async def reset_round_robin(
    scope: Optional[ResetRequest] = None,
    db: AsyncSession = Depends(get_db),
    service: AssignmentService = Depends(get_assignment_service),
) -> ResetResponse:
    """Clear pointers for one branch, one hotel, or everywhere (empty body)."""
    scope = scope or ResetRequest()
    cleared = await service.reset_round_robin(db, scope.hotel_id, scope.branch_id)
    return ResetResponse(cleared=cleared, hotel_id=scope.hotel_id, branch_id=scope.branch_id)


# --- scheduler ---

@app.get(
    "/api/scheduler/jobs",
    response_model=list[SchedulerJobStatus],
    tags=["Scheduler"],
)
async def scheduler_jobs(
    scheduler: ResetScheduler = Depends(get_reset_scheduler),
) -> list[SchedulerJobStatus]:
    return [scheduler_status(scheduler)]


@app.post(
    "/api/scheduler/jobs/round-robin-reset/run",
    response_model=SchedulerRunResponse,
    tags=["Scheduler"],
    summary="Run Reset Now",
)
async def run_reset_job(
    scheduler: ResetScheduler = Depends(get_reset_scheduler),
) -> SchedulerRunResponse:
    """Run the daily reset immediately. The daily slot is unchanged."""
    cleared = await scheduler.run_once("manual")
    return SchedulerRunResponse(
        success=cleared is not None,
        cleared=cleared,
        job=scheduler_status(scheduler),
    )


# --- websocket ---

@app.websocket("/ws/{channel_key}")
async def websocket_channel(websocket: WebSocket, channel_key: str) -> None:
    """
    Subscribe to one notification channel: ``staff_<id>``,
    ``manager_<id>`` or ``branch_<id>``. Send "ping" to get "pong".
    """
    if not CHANNEL_KEY_PATTERN.match(channel_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not await ws_manager.connect(websocket, channel_key):
        return

    try:
        await websocket.send_json({"event": "subscribed", "channel": channel_key})
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, channel_key)


# --- error handlers ---

@app.exception_handler(AssignmentError)
async def assignment_exception_handler(request: Request, exc: AssignmentError) -> JSONResponse:
    """Typed engine failures map to their own status codes."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=json.loads(json.dumps(exc.to_dict(), default=str)),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# --- entry point ---

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
