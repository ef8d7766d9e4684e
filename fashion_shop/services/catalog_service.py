from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from fashion_shop.errors import ResourceNotFound
from fashion_shop.models import Product, StockVariant
from fashion_shop.services.stock_ledger import StockLedger


class CatalogService:
    """Product lookups and stock edits for the admin back-office."""

    def __init__(self, db_session: Session, stock_ledger: Optional[StockLedger] = None) -> None:
        self.db = db_session
        self.stock_ledger = stock_ledger or StockLedger(db_session)
        self.logger = logging.getLogger(__name__)

    def get_product(self, product_id: int) -> Product:
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise ResourceNotFound("Product", product_id)
        return product

    def list_products(self, category: Optional[str] = None) -> List[Product]:
        query = self.db.query(Product)
        if category:
            query = query.filter(Product.category == category)
        return query.order_by(Product.productID).all()

    def create_product(
        self,
        name: str,
        price: int,
        category: str,
        brand: Optional[str] = None,
        description: Optional[str] = None,
        stock: Iterable[Dict[str, Any]] = (),
    ) -> Tuple[bool, str, Optional[Product]]:
        try:
            if not name or not name.strip():
                return False, "Name is required", None
            if price is None or int(price) < 0:
                return False, "Price must be zero or positive", None
            if not category:
                return False, "Category is required", None

            product = Product(
                name=name.strip(),
                price=int(price),
                category=category,
                brand=brand,
                description=description,
            )
            for entry in stock:
                quantity = int(entry.get("quantity") or 0)
                if quantity < 0:
                    return False, "Stock quantity cannot be negative", None
                product.variants.append(
                    StockVariant(
                        size=(entry.get("size") or "").strip(),
                        color=(entry.get("color") or "").strip(),
                        quantity=quantity,
                    )
                )

            self.db.add(product)
            self.db.commit()
            self.db.refresh(product)
            self.logger.info("Created product %d (%s)", product.productID, product.name)
            return True, "Product created successfully", product

        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Error creating product: {e}")
            return False, f"Error creating product: {str(e)}", None

    def update_stock(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        delta: Optional[int] = None,
        quantity: Optional[int] = None,
    ) -> int:
        """Apply a signed ``delta`` or overwrite with an absolute ``quantity``."""
        self.get_product(product_id)
        if quantity is not None:
            return self.stock_ledger.set_quantity(product_id, size, color, int(quantity))
        return self.stock_ledger.adjust(product_id, size, color, int(delta or 0))
