# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/storefront/services/inventory_service.py

from __future__ import annotations

from ..extensions import db
from ..models import Inventory, InventoryAdjustment, ProductVariant
from ..errors import NotFoundError
from storefront.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
"""
Storefront Inventory Invariants (authoritative)

Inventory model:
- Each stock-tracked variant has exactly one Inventory row holding quantity.
- Variants without an Inventory row are not stock-tracked; sale/restock side
  effects skip them silently.
- Every change to quantity appends one InventoryAdjustment in the same DB
  transaction (quantity_delta + quantity_after).

Business invariants:
- quantity may never go negative. decrement() raises InsufficientStock and the
  caller rolls back the whole unit of work. find_shortfall() lets a caller
  check a whole order first and keep the rest of its work when stock is short.
- SALE/RESTOCK adjustments carry an idempotency key
  (order:<id>:item:<item_id>:sale / :restock). A key that is already in the
  ledger makes the call a no-op, so replays never move stock twice.

Transactions:
- decrement()/increment() only flush; they run inside the caller's
  transaction (payment reconciliation, refunds).
- receive()/adjust()/set_low_stock_threshold() are standalone admin
  operations and commit.
"""


ADJUSTMENT_REASONS = ("SALE", "RESTOCK", "RECEIVE", "ADJUST")


class InventoryError(Exception):
    """Raised for inventory operation errors."""
    pass


class InsufficientStock(InventoryError):
    """Raised when a decrement would take quantity below zero."""

    def __init__(self, variant_id: int, available: int, requested: int):
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for variant {variant_id}: available {available}, requested {requested}"
        )


def sale_key(order_id: int, item_id: int) -> str:
    return f"order:{order_id}:item:{item_id}:sale"


def restock_key(order_id: int, item_id: int) -> str:
    return f"order:{order_id}:item:{item_id}:restock"


def _locked_inventory(variant_id: int) -> Inventory | None:
    return lock_for_update(db.session.query(Inventory).filter_by(variant_id=variant_id)).first()


def key_applied(idempotency_key: str | None) -> bool:
    """True when a movement with this idempotency key is already in the ledger."""
    if not idempotency_key:
        return False
    return db.session.query(InventoryAdjustment.id).filter_by(
        idempotency_key=idempotency_key
    ).first() is not None


def _apply_delta(
    *,
    variant_id: int,
    delta: int,
    reason: str,
    idempotency_key: str | None = None,
    order_id: int | None = None,
    payment_id: int | None = None,
    note: str | None = None,
    require_inventory: bool = False,
) -> InventoryAdjustment | None:
    """
    Lock the variant's Inventory row, apply delta and append the ledger row.

    Returns the new InventoryAdjustment, or None when the variant is not
    stock-tracked or the idempotency key was already applied.
    """
    if reason not in ADJUSTMENT_REASONS:
        raise InventoryError(f"reason must be one of: {', '.join(ADJUSTMENT_REASONS)}")

    inventory = _locked_inventory(variant_id)
    if inventory is None:
        if require_inventory:
            raise NotFoundError(f"Variant {variant_id} is not stock-tracked")
        return None

    if key_applied(idempotency_key):
        return None

    new_quantity = inventory.quantity + delta
    if new_quantity < 0:
        raise InsufficientStock(variant_id, inventory.quantity, -delta)

    inventory.quantity = new_quantity
    inventory.updated_at = utcnow()

    adjustment = InventoryAdjustment(
        variant_id=variant_id,
        quantity_delta=delta,
        quantity_after=new_quantity,
        reason=reason,
        order_id=order_id,
        payment_id=payment_id,
        idempotency_key=idempotency_key,
        note=note,
        occurred_at=utcnow(),
    )
    db.session.add(adjustment)
    db.session.flush()
    return adjustment


def decrement(
    variant_id: int,
    quantity: int,
    idempotency_key: str,
    *,
    order_id: int | None = None,
    payment_id: int | None = None,
    note: str | None = None,
) -> InventoryAdjustment | None:
    """
    SALE movement inside the caller's transaction.

    Raises:
        InsufficientStock: stock would go negative (caller must roll back)
    """
    if quantity <= 0:
        raise InventoryError("quantity must be > 0")
    return _apply_delta(
        variant_id=variant_id,
        delta=-quantity,
        reason="SALE",
        idempotency_key=idempotency_key,
        order_id=order_id,
        payment_id=payment_id,
        note=note,
    )


def find_shortfall(lines) -> InsufficientStock | None:
    """
    Check a batch of SALE movements before applying any of them.

    lines are (variant_id, quantity, idempotency_key) tuples. Already applied
    keys and untracked variants are skipped; quantities for the same variant
    are summed. Locks the Inventory rows (in variant order) and returns the
    first shortfall, or None when every movement fits.
    """
    needed = {}
    for variant_id, quantity, idempotency_key in lines:
        if key_applied(idempotency_key):
            continue
        needed[variant_id] = needed.get(variant_id, 0) + quantity

    for variant_id in sorted(needed):
        inventory = _locked_inventory(variant_id)
        if inventory is not None and inventory.quantity < needed[variant_id]:
            return InsufficientStock(variant_id, inventory.quantity, needed[variant_id])
    return None


def increment(
    variant_id: int,
    quantity: int,
    idempotency_key: str,
    *,
    order_id: int | None = None,
    payment_id: int | None = None,
    note: str | None = None,
) -> InventoryAdjustment | None:
    """RESTOCK movement inside the caller's transaction."""
    if quantity <= 0:
        raise InventoryError("quantity must be > 0")
    return _apply_delta(
        variant_id=variant_id,
        delta=quantity,
        reason="RESTOCK",
        idempotency_key=idempotency_key,
        order_id=order_id,
        payment_id=payment_id,
        note=note,
    )


def _ensure_tracked(variant_id: int) -> None:
    if db.session.get(ProductVariant, variant_id) is None:
        raise NotFoundError("Variant not found")


def receive(variant_id: int, quantity: int, note: str | None = None) -> InventoryAdjustment:
    """
    Admin receiving. Starts stock tracking for the variant when it has no
    Inventory row yet.
    """
    if quantity <= 0:
        raise InventoryError("quantity must be > 0")
    _ensure_tracked(variant_id)

    def _do():
        if _locked_inventory(variant_id) is None:
            db.session.add(Inventory(variant_id=variant_id, quantity=0))
            db.session.flush()
        adjustment = _apply_delta(variant_id=variant_id, delta=quantity, reason="RECEIVE", note=note)
        db.session.commit()
        return adjustment

    return run_with_retry(_do)


def adjust(variant_id: int, delta: int, note: str | None = None) -> InventoryAdjustment:
    """Admin correction (either sign). A note is mandatory for the audit trail."""
    if delta == 0:
        raise InventoryError("delta cannot be 0")
    if not note or not note.strip():
        raise InventoryError("note is required for adjustments")
    _ensure_tracked(variant_id)

    def _do():
        adjustment = _apply_delta(
            variant_id=variant_id,
            delta=delta,
            reason="ADJUST",
            note=note.strip(),
            require_inventory=True,
        )
        db.session.commit()
        return adjustment

    return run_with_retry(_do)


def set_low_stock_threshold(variant_id: int, threshold: int) -> Inventory:
    if threshold < 0:
        raise InventoryError("low_stock_threshold must be >= 0")

    inventory = db.session.query(Inventory).filter_by(variant_id=variant_id).first()
    if inventory is None:
        raise NotFoundError(f"Variant {variant_id} is not stock-tracked")

    inventory.low_stock_threshold = threshold
    db.session.commit()
    return inventory


def get_inventory(variant_id: int) -> Inventory:
    inventory = db.session.query(Inventory).filter_by(variant_id=variant_id).first()
    if inventory is None:
        raise NotFoundError(f"Variant {variant_id} is not stock-tracked")
    return inventory


def list_adjustments(variant_id: int, *, limit: int = 100) -> list[InventoryAdjustment]:
    return (
        db.session.query(InventoryAdjustment)
        .filter_by(variant_id=variant_id)
        .order_by(InventoryAdjustment.occurred_at.desc(), InventoryAdjustment.id.desc())
        .limit(limit)
        .all()
    )


def list_low_stock() -> list[Inventory]:
    """Stock-tracked variants at or below their threshold."""
    return (
        db.session.query(Inventory)
        .filter(Inventory.quantity <= Inventory.low_stock_threshold)
        .order_by(Inventory.quantity.asc(), Inventory.variant_id.asc())
        .all()
    )
