"""
Inventory store and reconciler for the Orders service.

The product and variant tables belong to the catalog; this module only
reads them and applies stock adjustments. Cancelled orders hand their line
items back to stock through ``restore_order_inventory``.
"""
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import compensation, models
from .enums import CompensationKind, CompensationStatus, ProductStatus
from .errors import ConflictError, NotFoundError

# Set up logging
logger = logging.getLogger(__name__)


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a single catalog product by ID.

    Args:
        db: Database session
        product_id: ID of the product to retrieve

    Returns:
        Product object or None if not found
    """
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_variants(db: Session, product_id: int) -> List[models.ProductVariant]:
    return db.query(models.ProductVariant).filter(
        models.ProductVariant.product_id == product_id
    ).order_by(models.ProductVariant.id).all()


def find_variant(
    variants: List[models.ProductVariant],
    variant_id: Optional[int] = None,
    sku: Optional[str] = None,
) -> Optional[models.ProductVariant]:
    """
    Pick the variant an order line refers to.

    The variant id captured at ordering time wins; the SKU is the fallback
    for lines that only recorded a SKU. SKUs must match exactly.
    """
    if variant_id is not None:
        for variant in variants:
            if variant.id == variant_id:
                return variant
    if sku:
        for variant in variants:
            if variant.sku == sku:
                return variant
    return None


def adjust_stock(
    db: Session, product_id: int, delta: int, variant_id: Optional[int] = None
) -> bool:
    """
    Atomically add ``delta`` to a variant's stock, or to the product's base
    stock when ``variant_id`` is None.

    The write is a single conditional UPDATE (``stock = stock + delta`` where
    the result stays non-negative), so concurrent adjustments never lose
    updates and stock never goes below zero. Does not commit.

    Returns:
        True if a row was updated, False if it does not exist or the
        adjustment would make stock negative
    """
    if variant_id is not None:
        model = models.ProductVariant
        query = db.query(model).filter(
            model.id == variant_id,
            model.product_id == product_id,
        )
    else:
        model = models.Product
        query = db.query(model).filter(model.id == product_id)

    updated = query.filter(model.stock + delta >= 0).update(
        {model.stock: model.stock + delta}, synchronize_session=False
    )
    return bool(updated)


def available_units(db: Session, product_id: int) -> int:
    """Largest stock count across the product's base stock and its variants."""
    base = db.query(models.Product.stock).filter(models.Product.id == product_id).scalar() or 0
    variant_max = db.query(func.max(models.ProductVariant.stock)).filter(
        models.ProductVariant.product_id == product_id
    ).scalar() or 0
    return max(base, variant_max)


def refresh_availability(db: Session, product_id: int) -> bool:
    """
    Flip an ``out-of-stock`` product back to ``active`` once any unit is
    available. Other statuses are left alone. Does not commit.

    Returns:
        True if the status was flipped
    """
    if available_units(db, product_id) <= 0:
        return False
    updated = db.query(models.Product).filter(
        models.Product.id == product_id,
        models.Product.status == ProductStatus.OUT_OF_STOCK,
    ).update({models.Product.status: ProductStatus.ACTIVE}, synchronize_session=False)
    if updated:
        logger.info(f"Product {product_id} back in stock, status set to active")
    return bool(updated)


@compensation.register_handler(CompensationKind.INVENTORY_RESTORE)
def restore_item(db: Session, payload: Dict[str, Any]) -> None:
    """
    Put one order line's quantity back into stock.

    Payload keys: ``productId``, ``productSku``, ``variantId``, ``quantity``.

    Raises:
        NotFoundError: If the product, or the variant of a variant product,
            cannot be resolved
        ConflictError: If the stock row could not be updated
    """
    product_id = payload["productId"]
    quantity = int(payload["quantity"])
    sku = payload.get("productSku")
    variant_id = payload.get("variantId")

    product = get_product(db, product_id)
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")

    variants = get_variants(db, product_id)
    if variants:
        variant = find_variant(variants, variant_id=variant_id, sku=sku)
        if variant is None:
            raise NotFoundError(
                f"Variant with SKU {sku} not found in product {product_id}"
            )
        if not adjust_stock(db, product_id, quantity, variant_id=variant.id):
            raise ConflictError(f"Could not restore stock for variant {variant.sku}")
        logger.info(
            f"Restored {quantity} unit(s) of variant {variant.sku} (product {product_id}): "
            f"{variant.stock} -> {variant.stock + quantity}"
        )
    else:
        if not adjust_stock(db, product_id, quantity):
            raise ConflictError(f"Could not restore base stock for product {product_id}")
        logger.info(
            f"Restored {quantity} unit(s) of product {product_id} base stock: "
            f"{product.stock} -> {product.stock + quantity}"
        )

    refresh_availability(db, product_id)


def restoration_key(order_number: str, item_id: int) -> str:
    return f"inventory_restore:{order_number}:{item_id}"


def restore_order_inventory(db: Session, order: models.Order) -> List[Dict[str, Any]]:
    """
    Restore stock for every line item of a cancelled order.

    Items are processed independently: a missing product or variant is
    logged and recorded in the compensating-action ledger, and processing
    continues with the next item. Each item succeeds at most once.

    Args:
        db: Database session
        order: The cancelled order

    Returns:
        One result per item: ``{itemId, productId, productSku, quantity, restored, error}``
    """
    results = []
    for item in list(order.items):
        payload = {
            "productId": item.product_id,
            "productSku": item.product_sku,
            "variantId": item.variant_id,
            "quantity": item.quantity,
        }
        try:
            entry = compensation.run_action(
                db,
                CompensationKind.INVENTORY_RESTORE,
                order.order_number,
                restoration_key(order.order_number, item.id),
                payload,
            )
            restored = entry.status == CompensationStatus.SUCCEEDED
            error = None if restored else entry.last_error
        except Exception:
            db.rollback()
            logger.exception(f"[{order.order_number}] Could not record restoration of item {item.id}")
            restored, error = False, "Restoration could not be recorded"
        results.append({
            "itemId": item.id,
            "productId": item.product_id,
            "productSku": item.product_sku,
            "quantity": item.quantity,
            "restored": restored,
            "error": error,
        })

    failed = [r for r in results if not r["restored"]]
    if failed:
        logger.warning(
            f"[{order.order_number}] Inventory restoration incomplete: "
            f"{len(failed)} of {len(results)} item(s) not restored"
        )
    else:
        logger.info(f"[{order.order_number}] Inventory restoration completed")
    return results
