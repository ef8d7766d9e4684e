from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from fashion_shop.errors import InsufficientStock, ResourceNotFound
from fashion_shop.models import Product, StockVariant, utcnow
from fashion_shop.observability.metrics import increment_counter, record_event


def publish_inventory_update_event(
    product_id: int,
    size: str,
    color: str,
    old_quantity: int,
    new_quantity: int,
    reason: str = "sale",
) -> None:
    """Publish a variant stock change to the in-process event stream."""
    record_event(
        "inventory_updated",
        {
            "product_id": product_id,
            "size": size,
            "color": color,
            "old_quantity": old_quantity,
            "new_quantity": new_quantity,
            "change": new_quantity - old_quantity,
            "reason": reason,
            "timestamp": utcnow().isoformat(),
        },
    )
    increment_counter(
        "inventory_updates_total",
        labels={"reason": reason, "direction": "decrease" if new_quantity < old_quantity else "increase"},
    )


def _norm(value: Optional[str]) -> str:
    return (value or "").strip()


class StockLedger:
    """
    Authoritative per-(product, size, color) stock quantities.

    Every mutation is a single conditional UPDATE; a debit only succeeds when the
    row still holds enough stock, so concurrent checkouts can never oversell.
    With ``commit=True`` (the default) each call is its own transaction. Callers
    that need the change bundled with other writes pass ``commit=False`` and
    commit themselves; events are then published immediately, before that commit.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def _variant_clause(self, product_id: int, size: Optional[str], color: Optional[str]):
        return (
            StockVariant.productID == product_id,
            StockVariant.size == _norm(size),
            StockVariant.color == _norm(color),
        )

    def get_available(self, product_id: int, size: Optional[str], color: Optional[str]) -> int:
        quantity = (
            self.db.query(StockVariant.quantity)
            .filter(*self._variant_clause(product_id, size, color))
            .scalar()
        )
        return int(quantity or 0)

    def total_stock(self, product_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(StockVariant.quantity), 0))
            .filter(StockVariant.productID == product_id)
            .scalar()
        )
        return int(total or 0)

    def list_variants(self, product_id: int) -> List[StockVariant]:
        return (
            self.db.query(StockVariant)
            .filter(StockVariant.productID == product_id)
            .order_by(StockVariant.variantID)
            .all()
        )

    def debit(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        reason: str = "sale",
        commit: bool = True,
    ) -> int:
        """
        Decrement a variant by ``quantity`` or raise InsufficientStock.

        Returns the new quantity.
        """
        if quantity <= 0:
            raise ValueError("Debit quantity must be positive")

        stmt = (
            update(StockVariant)
            .where(*self._variant_clause(product_id, size, color), StockVariant.quantity >= quantity)
            .values(quantity=StockVariant.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            available = self.get_available(product_id, size, color)
            if commit:
                self.db.rollback()
            product_name = (
                self.db.query(Product.name).filter(Product.productID == product_id).scalar()
            )
            increment_counter("stock_debit_rejections_total", labels={"reason": reason})
            raise InsufficientStock(
                product_id,
                _norm(size),
                _norm(color),
                requested=quantity,
                available=available,
                product_name=product_name,
            )

        new_quantity = self.get_available(product_id, size, color)
        if commit:
            self.db.commit()

        publish_inventory_update_event(
            product_id, _norm(size), _norm(color), new_quantity + quantity, new_quantity, reason
        )
        self.logger.info(
            "Stock debited for product %d (%s/%s): -%d -> %d (%s)",
            product_id,
            _norm(size),
            _norm(color),
            quantity,
            new_quantity,
            reason,
        )
        return new_quantity

    def credit(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        reason: str = "restock",
        commit: bool = True,
    ) -> int:
        """
        Increment a variant by ``quantity``. A credited variant that no longer
        exists is recreated, so a credit-back never fails for a missing row.
        """
        if quantity <= 0:
            raise ValueError("Credit quantity must be positive")

        stmt = (
            update(StockVariant)
            .where(*self._variant_clause(product_id, size, color))
            .values(quantity=StockVariant.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.add(
                StockVariant(
                    productID=product_id,
                    size=_norm(size),
                    color=_norm(color),
                    quantity=quantity,
                )
            )
            self.db.flush()

        new_quantity = self.get_available(product_id, size, color)
        if commit:
            self.db.commit()

        publish_inventory_update_event(
            product_id, _norm(size), _norm(color), new_quantity - quantity, new_quantity, reason
        )
        self.logger.info(
            "Stock credited for product %d (%s/%s): +%d -> %d (%s)",
            product_id,
            _norm(size),
            _norm(color),
            quantity,
            new_quantity,
            reason,
        )
        return new_quantity

    def adjust(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        delta: int,
        reason: str = "adjustment",
    ) -> int:
        """Signed stock edit routed through debit/credit."""
        if delta > 0:
            return self.credit(product_id, size, color, delta, reason=reason)
        if delta < 0:
            return self.debit(product_id, size, color, -delta, reason=reason)
        return self.get_available(product_id, size, color)

    def set_quantity(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        reason: str = "adjustment",
    ) -> int:
        """Admin stock edit: overwrite a variant quantity, creating the variant if needed."""
        if quantity < 0:
            raise ValueError("Stock quantity cannot be negative")

        if self.db.query(Product.productID).filter(Product.productID == product_id).scalar() is None:
            raise ResourceNotFound("Product", product_id)

        variant = (
            self.db.query(StockVariant)
            .filter(*self._variant_clause(product_id, size, color))
            .first()
        )
        old_quantity = 0
        if variant is None:
            variant = StockVariant(
                productID=product_id, size=_norm(size), color=_norm(color), quantity=quantity
            )
            self.db.add(variant)
        else:
            old_quantity = variant.quantity
            variant.quantity = quantity
        self.db.commit()

        publish_inventory_update_event(
            product_id, _norm(size), _norm(color), old_quantity, quantity, reason
        )
        return quantity
