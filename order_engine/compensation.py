"""
Compensating-action ledger.

Side effects that must not fail their primary operation (customer stats
after a payment, stock restoration after a cancellation) run through
``run_action``. Each run is recorded with its outcome so failures can be
listed and retried later. A succeeded action is never run again for the
same idempotency key.
"""
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .enums import CompensationKind, CompensationStatus
from .errors import NotFoundError, OrderEngineError

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Dict[str, Any]], None]

HANDLERS: Dict[CompensationKind, Handler] = {}


def register_handler(kind: CompensationKind):
    """
    Decorator registering the function that performs ``kind`` actions.

    Example:
        @register_handler(CompensationKind.CUSTOMER_STATS)
        def apply_customer_stats(db, payload):
            ...
    """
    def decorator(func: Handler) -> Handler:
        HANDLERS[kind] = func
        return func
    return decorator


def get_action(db: Session, action_id: int) -> Optional[models.CompensatingAction]:
    return db.query(models.CompensatingAction).filter(
        models.CompensatingAction.id == action_id
    ).first()


def get_action_by_key(db: Session, key: str) -> Optional[models.CompensatingAction]:
    return db.query(models.CompensatingAction).filter(
        models.CompensatingAction.idempotency_key == key
    ).first()


def list_actions(
    db: Session,
    status: Optional[CompensationStatus] = None,
    kind: Optional[CompensationKind] = None,
    order_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.CompensatingAction]:
    """
    List ledger entries, newest first.

    Args:
        db: Database session
        status: Only entries with this outcome (e.g. failed ones awaiting retry)
        kind: Only entries of this kind
        order_number: Only entries for this order
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
    """
    query = db.query(models.CompensatingAction)
    if status is not None:
        query = query.filter(models.CompensatingAction.status == status)
    if kind is not None:
        query = query.filter(models.CompensatingAction.kind == kind)
    if order_number:
        query = query.filter(models.CompensatingAction.order_number == order_number)
    return query.order_by(models.CompensatingAction.id.desc()).offset(skip).limit(limit).all()


def _record(
    db: Session,
    kind: CompensationKind,
    order_number: str,
    key: str,
    payload: Dict[str, Any],
    status: CompensationStatus,
    error: Optional[str],
) -> models.CompensatingAction:
    entry = get_action_by_key(db, key)
    if entry is None:
        entry = models.CompensatingAction(
            kind=kind,
            order_number=order_number,
            idempotency_key=key,
            payload=payload,
            attempts=0,
        )
        db.add(entry)
    entry.status = status
    entry.attempts = (entry.attempts or 0) + 1
    entry.last_error = error
    try:
        db.commit()
    except IntegrityError:
        # Another request recorded the same key first; keep its entry
        db.rollback()
        entry = get_action_by_key(db, key)
    return entry


def run_action(
    db: Session,
    kind: CompensationKind,
    order_number: str,
    key: str,
    payload: Dict[str, Any],
) -> models.CompensatingAction:
    """
    Run one compensating action and record the outcome.

    The handler must not commit: its writes and the ledger entry commit
    together, so a recorded success always means the effect was applied.
    Failures are rolled back, logged and recorded, never raised; the
    caller's primary operation has already been committed.

    Args:
        db: Database session
        kind: Which registered handler performs the action
        order_number: Order the action belongs to
        key: Idempotency key; an already-succeeded key is not run again
        payload: Handler arguments, stored for retries

    Returns:
        The ledger entry after this attempt
    """
    existing = get_action_by_key(db, key)
    if existing is not None and existing.status == CompensationStatus.SUCCEEDED:
        logger.info(f"Compensating action {key} already succeeded, skipping")
        return existing

    handler = HANDLERS[kind]
    try:
        handler(db, payload)
    except NotFoundError as e:
        db.rollback()
        logger.warning(f"[{order_number}] {kind.value} skipped: {e.message}")
        return _record(db, kind, order_number, key, payload, CompensationStatus.FAILED, e.message)
    except Exception as e:
        db.rollback()
        message = e.message if isinstance(e, OrderEngineError) else str(e)
        logger.exception(f"[{order_number}] {kind.value} failed: {message}")
        return _record(db, kind, order_number, key, payload, CompensationStatus.FAILED, message)

    return _record(db, kind, order_number, key, payload, CompensationStatus.SUCCEEDED, None)


def retry_action(db: Session, action_id: int) -> models.CompensatingAction:
    """
    Re-run a failed ledger entry with its stored payload.

    Raises:
        NotFoundError: If the entry does not exist
    """
    entry = get_action(db, action_id)
    if entry is None:
        raise NotFoundError("Compensating action not found")
    return run_action(
        db,
        CompensationKind(entry.kind),
        entry.order_number,
        entry.idempotency_key,
        dict(entry.payload or {}),
    )
