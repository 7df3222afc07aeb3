"""
Orders Service API

This module implements the FastAPI application for the storefront's order and
payment reconciliation engine: order intake, PayHere payment callbacks,
customer cancellations with stock compensation, order tracking and the staff
endpoints used by the admin dashboard.

Endpoints:
    POST /orders: Create an order from a checkout request
    GET /orders: Order history of a customer
    PATCH /orders/cancel/{order_number}: Cancel an unpaid order
    GET, POST /orders/track: Track an order
    POST /customers: Create or update a customer
    POST /payments/notify: PayHere notify callback (form-encoded)
    POST /payments/initiate: Signed checkout form for an order
    POST /payments/hash: Checkout hash for an order id and amount
    GET /payments/status: Payment status of an order
    GET /admin/...: Staff endpoints (bearer token with role admin)
    GET /healthz: Health check endpoint for orchestration systems

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
from typing import Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import (
    auth, compensation, config, crud, customers, intake, lifecycle, models,
    payments, schemas, signature, tracking, webhooks,
)
from .database import engine, get_db
from .enums import CompensationKind, CompensationStatus, OrderStatus, PaymentStatus
from .errors import InternalError, NotFoundError, OrderEngineError, SignatureError, ValidationError
from .logging_config import configure_logging
from .ratelimit import RateLimiter

configure_logging()
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="orders-service")


def ok(data) -> dict:
    return {"success": True, "data": data}


@app.exception_handler(OrderEngineError)
async def handle_domain_error(request: Request, exc: OrderEngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": message})


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@app.post(
    "/orders",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RateLimiter("orders", "strict"))],
)
def create_order(
    order_in: schemas.OrderCreate,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Create a new order from the checkout form.

    A repeated submission of the same order within the duplicate window
    returns the existing order with HTTP 200 and ``duplicate: true``.

    Returns:
        201 with ``{orderNumber, id, customerId, status, total, currency, createdAt}``

    Raises:
        ValidationError (400): If the request breaks a business rule
    """
    order, created = intake.create_order(db, order_in)
    if created:
        background_tasks.add_task(
            webhooks.send_webhook, webhooks.ORDER_CREATED, webhooks.order_created_payload(order)
        )
    else:
        response.status_code = status.HTTP_200_OK

    return ok({
        "orderNumber": order.order_number,
        "id": order.id,
        "customerId": order.customer_id,
        "status": OrderStatus(order.order_status).value,
        "paymentStatus": PaymentStatus(order.payment_status).value,
        "total": str(order.order_total),
        "currency": order.currency,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "duplicate": not created,
    })


@app.get("/orders")
def list_customer_orders(
    customer_id: Optional[int] = Query(None, alias="customerId"),
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    """Order history of one customer, newest first (at most 50 per page)."""
    return ok(tracking.customer_order_history(db, customer_id, page=page, limit=limit))


@app.patch(
    "/orders/cancel/{order_number}",
    dependencies=[Depends(RateLimiter("cancel", "strict"))],
)
def cancel_order(
    order_number: str,
    request_in: schemas.CancelRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Cancel an unpaid order owned by the requesting customer and restore its stock.

    Raises:
        ValidationError (400): Missing customer id or unsupported action
        NotFoundError (404): Order not found or not owned by the customer
        ConflictError (400): Payment has already been processed
        ConcurrencyError (409): The order changed while being cancelled
    """
    result = lifecycle.cancel_order(db, order_number, request_in.customer_id, request_in.action)
    if not result["alreadyCancelled"]:
        background_tasks.add_task(webhooks.send_webhook, webhooks.ORDER_CANCELLED, {
            "orderNumber": result["orderNumber"],
            "cancelledAt": result["cancelledAt"],
            "inventoryRestored": result["inventoryRestored"],
        })
    return ok(result)


@app.get("/orders/track", dependencies=[Depends(RateLimiter("track", "moderate"))])
def track_order_get(
    order_number: Optional[str] = Query(None, alias="orderNumber"),
    email: Optional[str] = None,
    phone: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return ok(tracking.track_order(db, order_number, email=email, phone=phone))


@app.post("/orders/track", dependencies=[Depends(RateLimiter("track", "moderate"))])
def track_order_post(request_in: schemas.TrackRequest, db: Session = Depends(get_db)):
    return ok(tracking.track_order(
        db, request_in.order_number, email=request_in.email, phone=request_in.phone
    ))


@app.post("/customers", dependencies=[Depends(RateLimiter("customers", "moderate"))])
def upsert_customer(
    customer_in: schemas.CustomerUpsert,
    response: Response,
    db: Session = Depends(get_db),
):
    """Create a customer, or update the existing record with the same email."""
    customer, created = customers.upsert_customer(
        db,
        email=customer_in.email,
        name=customer_in.name.strip(),
        phone=customer_in.phone.strip(),
        secondary_phone=customer_in.secondary_phone,
        address=customer_in.address,
        language=customer_in.preferred_language,
        marketing_opt_in=customer_in.marketing_opt_in,
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ok({
        "id": customer.id,
        "email": customer.email,
        "name": customer.name,
        "created": created,
    })


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@app.post("/payments/notify")
async def payment_notify(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    PayHere notify callback.

    Answers ``OK`` once the notification has been handled (including
    duplicates and out-of-order deliveries) and ``ERROR`` with HTTP 500 when
    processing failed, so the gateway delivers it again.
    """
    form = await request.form()
    notification = schemas.PayHereNotification(**{key: str(value) for key, value in form.items()})
    try:
        result = await run_in_threadpool(payments.process_notification, db, notification)
    except (SignatureError, NotFoundError) as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})
    except OrderEngineError as e:
        logger.error(f"[{notification.order_id}] Notification processing failed: {e.message}")
        return PlainTextResponse("ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    except Exception:
        logger.exception(f"[{notification.order_id}] Unexpected error processing notification")
        return PlainTextResponse("ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if result["applied"]:
        background_tasks.add_task(webhooks.send_webhook, webhooks.ORDER_PAYMENT_UPDATED, result)
    return PlainTextResponse("OK")


@app.post("/payments/initiate", dependencies=[Depends(RateLimiter("payments", "moderate"))])
def initiate_payment(request_in: schemas.PaymentInitiation, db: Session = Depends(get_db)):
    """
    Build the signed PayHere checkout form for an order.

    Raises:
        NotFoundError (404): Unknown order
        ConflictError (400): Order already paid or cancelled
    """
    return ok(payments.build_checkout_payload(db, request_in.order_number))


@app.post("/payments/hash")
def generate_hash(request_in: schemas.HashRequest):
    if not config.PAYHERE_MERCHANT_ID or not config.PAYHERE_MERCHANT_SECRET:
        raise InternalError("Payment gateway is not configured")
    amount = signature.format_amount(request_in.amount)
    return ok({
        "hash": signature.checkout_hash(request_in.order_id, amount, request_in.currency),
        "merchantId": config.PAYHERE_MERCHANT_ID,
        "orderId": request_in.order_id,
        "amount": amount,
        "currency": request_in.currency,
    })


@app.get("/payments/status")
def payment_status(
    order_id: Optional[str] = Query(None, alias="orderId"),
    db: Session = Depends(get_db),
):
    if not order_id or not order_id.strip():
        raise ValidationError("Order ID is required")
    return ok(payments.get_payment_status(db, order_id))


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.get("/admin/orders")
def admin_list_orders(
    skip: int = 0,
    limit: int = 100,
    order_status: Optional[OrderStatus] = Query(None, alias="orderStatus"),
    email: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """List orders with pagination, newest first, optionally filtered by status or email."""
    orders = crud.get_orders(
        db,
        skip=skip,
        limit=min(limit, 500),
        order_status=order_status,
        customer_email=customers.normalize_email(email) if email else None,
    )
    return ok([tracking.serialize_admin_order(order) for order in orders])


@app.patch("/admin/orders/{order_number}/status")
def admin_update_order_status(
    order_number: str,
    update: schemas.StatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Move an order along the fulfilment path.

    Raises:
        NotFoundError (404): Unknown order
        ConflictError (400): Transition not allowed
    """
    result = lifecycle.update_order_status(db, order_number, update.order_status, current_user.actor)
    if result["oldStatus"] != result["orderStatus"] and not result.get("alreadyCancelled"):
        event = (webhooks.ORDER_CANCELLED if result["orderStatus"] == OrderStatus.CANCELLED.value
                 else webhooks.ORDER_STATUS_CHANGED)
        background_tasks.add_task(webhooks.send_webhook, event, {
            "orderNumber": result["orderNumber"],
            "oldStatus": result["oldStatus"],
            "newStatus": result["orderStatus"],
        })
    return ok(result)


@app.get("/admin/orders/{order_number}/timeline")
def admin_order_timeline(
    order_number: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Events of an order, oldest first."""
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFoundError("Order not found")
    events = crud.get_order_timeline(db, order.id)
    return ok([schemas.OrderEvent.model_validate(event) for event in events])


@app.get("/admin/compensations")
def admin_list_compensations(
    action_status: Optional[CompensationStatus] = Query(None, alias="status"),
    kind: Optional[CompensationKind] = None,
    order_number: Optional[str] = Query(None, alias="orderNumber"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Compensating-action ledger, newest first; ``?status=failed`` lists retry candidates."""
    actions = compensation.list_actions(
        db,
        status=action_status,
        kind=kind,
        order_number=crud.normalize_order_number(order_number) if order_number else None,
        skip=skip,
        limit=limit,
    )
    return ok([schemas.CompensatingAction.model_validate(action) for action in actions])


@app.post("/admin/compensations/{action_id}/retry")
def admin_retry_compensation(
    action_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Re-run a failed compensating action; an already succeeded one is left untouched."""
    logger.info(f"Compensating action {action_id} retried by {current_user.actor}")
    action = compensation.retry_action(db, action_id)
    return ok(schemas.CompensatingAction.model_validate(action))


