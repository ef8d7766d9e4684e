# fashion_shop/services/flash_sale_service.py
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

from fashion_shop.errors import FlashSaleExpired, FlashSaleSoldOut, ResourceNotFound
from fashion_shop.models import FlashSale, FlashSaleProduct, Product, to_naive_utc, utcnow
from fashion_shop.observability.metrics import increment_counter, record_event
from fashion_shop.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

Offer = Tuple[FlashSale, FlashSaleProduct]


class FlashSaleService:
    """Time-windowed price overlays with independently capped sold counters."""

    def __init__(self, db_session: Session, stock_ledger: Optional[StockLedger] = None):
        self.db = db_session
        self.stock_ledger = stock_ledger or StockLedger(db_session)

    # ------------------------------------------------------------------ #
    # Storefront reads
    # ------------------------------------------------------------------ #

    def get_active_sales(self, now: Optional[datetime] = None) -> List[FlashSale]:
        """Currently active sales, highest priority first, then most recent."""
        now = to_naive_utc(now) or utcnow()
        return (
            self.db.query(FlashSale)
            .filter(
                FlashSale.is_active.is_(True),
                FlashSale.start_date <= now,
                FlashSale.end_date >= now,
            )
            .order_by(
                FlashSale.priority.desc(),
                FlashSale.created_at.desc(),
                FlashSale.flashSaleID.desc(),
            )
            .all()
        )

    def get_upcoming_sales(self, now: Optional[datetime] = None) -> List[FlashSale]:
        now = to_naive_utc(now) or utcnow()
        return (
            self.db.query(FlashSale)
            .filter(FlashSale.is_active.is_(True), FlashSale.start_date > now)
            .order_by(FlashSale.start_date.asc())
            .all()
        )

    def get_flash_sale_by_id(self, flash_sale_id: int) -> Optional[FlashSale]:
        return self.db.query(FlashSale).filter_by(flashSaleID=flash_sale_id).first()

    def find_eligible_offer(self, product_id: int, now: Optional[datetime] = None) -> Optional[Offer]:
        """
        First offer for the product across active sales, in priority order.

        An entry is eligible when its sale is currently active, the entry itself
        is active, and it still has unsold quantity.
        """
        for sale in self.get_active_sales(now):
            entry = sale.get_product_entry(product_id)
            if entry is not None and entry.is_available():
                return sale, entry
        return None

    # ------------------------------------------------------------------ #
    # Counter mutations
    # ------------------------------------------------------------------ #

    def reserve(
        self,
        flash_sale_id: int,
        product_id: int,
        quantity: int,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> int:
        """
        Atomically add ``quantity`` to the sold counter, never past the cap.

        Returns the new sold quantity. Raises FlashSaleExpired if the sale is no
        longer running and FlashSaleSoldOut if the cap cannot cover the request.
        """
        if quantity <= 0:
            raise ValueError("Reservation quantity must be positive")

        sale = self.get_flash_sale_by_id(flash_sale_id)
        if sale is None:
            raise ResourceNotFound("FlashSale", flash_sale_id)
        if not sale.is_currently_active(now):
            raise FlashSaleExpired(flash_sale_id, product_id)

        stmt = (
            update(FlashSaleProduct)
            .where(
                FlashSaleProduct.flashSaleID == flash_sale_id,
                FlashSaleProduct.productID == product_id,
                FlashSaleProduct.is_active.is_(True),
                FlashSaleProduct.sold_quantity + quantity <= FlashSaleProduct.max_quantity,
            )
            .values(sold_quantity=FlashSaleProduct.sold_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            entry = self._load_entry(flash_sale_id, product_id)
            if commit:
                self.db.rollback()
            if entry is None:
                raise ResourceNotFound("FlashSaleProduct", product_id)
            if not entry.is_active:
                raise FlashSaleExpired(flash_sale_id, product_id)
            increment_counter("flash_sale_reservation_rejections_total")
            raise FlashSaleSoldOut(flash_sale_id, product_id, quantity, entry.available_quantity)

        sold = self._sold_quantity(flash_sale_id, product_id)
        if commit:
            self.db.commit()

        increment_counter("flash_sale_reservations_total")
        record_event(
            "flash_sale_reserved",
            {"flash_sale_id": flash_sale_id, "product_id": product_id, "quantity": quantity, "sold": sold},
        )
        logger.info(
            "Reserved %d of product %d in flash sale %d (sold=%d)",
            quantity,
            product_id,
            flash_sale_id,
            sold,
        )
        return sold

    def release(
        self,
        flash_sale_id: int,
        product_id: int,
        quantity: int,
        commit: bool = True,
    ) -> int:
        """Decrement the sold counter, floored at zero. Missing sales release nothing."""
        if quantity <= 0:
            raise ValueError("Release quantity must be positive")

        stmt = (
            update(FlashSaleProduct)
            .where(
                FlashSaleProduct.flashSaleID == flash_sale_id,
                FlashSaleProduct.productID == product_id,
            )
            .values(
                sold_quantity=case(
                    (FlashSaleProduct.sold_quantity >= quantity, FlashSaleProduct.sold_quantity - quantity),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Flash sale %s no longer lists product %s; nothing released",
                flash_sale_id,
                product_id,
            )
            if commit:
                self.db.commit()
            return 0

        sold = self._sold_quantity(flash_sale_id, product_id)
        if commit:
            self.db.commit()

        increment_counter("flash_sale_releases_total")
        logger.info(
            "Released %d of product %d in flash sale %d (sold=%d)",
            quantity,
            product_id,
            flash_sale_id,
            sold,
        )
        return sold

    def _load_entry(self, flash_sale_id: int, product_id: int) -> Optional[FlashSaleProduct]:
        entry = (
            self.db.query(FlashSaleProduct)
            .filter_by(flashSaleID=flash_sale_id, productID=product_id)
            .first()
        )
        if entry is not None:
            self.db.refresh(entry)
        return entry

    def _sold_quantity(self, flash_sale_id: int, product_id: int) -> int:
        sold = (
            self.db.query(FlashSaleProduct.sold_quantity)
            .filter_by(flashSaleID=flash_sale_id, productID=product_id)
            .scalar()
        )
        return int(sold or 0)

    # ------------------------------------------------------------------ #
    # Cap allocation
    # ------------------------------------------------------------------ #

    def available_for_flash_sale(
        self,
        product_id: int,
        exclude_sale_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Aggregate stock not yet promised to another running or upcoming sale.

        Caps on the same product are exclusive allocations: every other sale
        that has not ended holds back its unsold remainder.
        """
        now = to_naive_utc(now) or utcnow()
        total_stock = self.stock_ledger.total_stock(product_id)

        query = (
            self.db.query(FlashSaleProduct)
            .join(FlashSale, FlashSale.flashSaleID == FlashSaleProduct.flashSaleID)
            .filter(
                FlashSaleProduct.productID == product_id,
                FlashSale.is_active.is_(True),
                FlashSale.end_date >= now,
            )
        )
        if exclude_sale_id is not None:
            query = query.filter(FlashSale.flashSaleID != exclude_sale_id)

        reserved = sum(entry.available_quantity for entry in query.all())
        return max(0, total_stock - reserved)

    def check_stock(
        self,
        product_id: int,
        requested_quantity: int = 0,
        exclude_sale_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise ResourceNotFound("Product", product_id)

        available = self.available_for_flash_sale(product_id, exclude_sale_id, now)
        return {
            "product": {"id": product.productID, "name": product.name, "price": product.price},
            "total_stock": self.stock_ledger.total_stock(product_id),
            "available_for_flash_sale": available,
            "can_add_to_flash_sale": available >= requested_quantity,
            "stock": [
                {"size": v.size, "color": v.color, "quantity": v.quantity}
                for v in self.stock_ledger.list_variants(product_id)
            ],
        }

    def products_with_stock(self, search: Optional[str] = None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Catalog picker for the admin flash sale form."""
        query = self.db.query(Product)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Product.name.ilike(pattern), Product.brand.ilike(pattern)))

        results = []
        for product in query.order_by(Product.name).all():
            total_stock = self.stock_ledger.total_stock(product.productID)
            results.append(
                {
                    "id": product.productID,
                    "name": product.name,
                    "price": product.price,
                    "category": product.category,
                    "brand": product.brand,
                    "total_stock": total_stock,
                    "available_for_flash_sale": self.available_for_flash_sale(product.productID, now=now),
                }
            )
        return results

    # ------------------------------------------------------------------ #
    # Admin CRUD
    # ------------------------------------------------------------------ #

    def _validate_products(
        self,
        products: Sequence[Dict[str, Any]],
        exclude_sale_id: Optional[int] = None,
        sold_quantities: Optional[Dict[int, int]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[FlashSaleProduct], List[str]]:
        sold_quantities = sold_quantities or {}
        errors: List[str] = []
        entries: List[FlashSaleProduct] = []
        seen = set()

        for position, data in enumerate(products):
            product_id = data.get("product_id")
            product = self.db.query(Product).filter_by(productID=product_id).first()
            if product is None:
                errors.append(f"Product {product_id} not found")
                continue
            if product_id in seen:
                errors.append(f"Product \"{product.name}\" is listed more than once")
                continue
            seen.add(product_id)

            try:
                discount = Decimal(str(data.get("discount_percentage")))
            except (InvalidOperation, TypeError, ValueError):
                errors.append(f"Product \"{product.name}\" has an invalid discount percentage")
                continue
            if not (0 < discount <= 100):
                errors.append(f"Product \"{product.name}\" discount must be between 0 and 100 percent")
                continue

            max_quantity = int(data.get("max_quantity") or 0)
            if max_quantity <= 0:
                errors.append(f"Product \"{product.name}\" max quantity must be positive")
                continue

            sold = sold_quantities.get(product_id, 0)
            if max_quantity < sold:
                errors.append(
                    f"Product \"{product.name}\" max quantity ({max_quantity}) "
                    f"is below the quantity already sold ({sold})"
                )
                continue

            # Unsold remainder is what this sale claims from stock
            available = self.available_for_flash_sale(product_id, exclude_sale_id, now)
            if max_quantity - sold > available:
                errors.append(
                    f"Product \"{product.name}\" requested quantity ({max_quantity}) "
                    f"exceeds available stock ({available})"
                )
                continue

            entries.append(
                FlashSaleProduct(
                    productID=product_id,
                    position=position,
                    original_price=product.price,
                    discount_percentage=discount,
                    max_quantity=max_quantity,
                    sold_quantity=sold,
                    is_active=data.get("is_active", True) is not False,
                )
            )

        return entries, errors

    def create_flash_sale(
        self,
        name: str,
        start_date: datetime,
        end_date: datetime,
        products: Sequence[Dict[str, Any]],
        description: str = "",
        priority: int = 0,
        is_active: bool = True,
        banner: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str, Optional[FlashSale]]:
        """Create a new flash sale"""
        start_date = to_naive_utc(start_date)
        end_date = to_naive_utc(end_date)
        try:
            if not name or not name.strip():
                return False, "Name is required", None
            if start_date is None or end_date is None:
                return False, "Start and end dates are required", None
            if end_date <= start_date:
                return False, "End date must be after start date", None
            if not products:
                return False, "No valid products for flash sale", None

            entries, errors = self._validate_products(products, now=now)
            if errors:
                return False, "Stock validation failed: " + "; ".join(errors), None
            if not entries:
                return False, "No valid products for flash sale", None

            flash_sale = FlashSale(
                name=name.strip(),
                description=description or "",
                start_date=start_date,
                end_date=end_date,
                priority=priority or 0,
                is_active=is_active is not False,
                banner=banner,
                createdByID=created_by,
            )
            flash_sale.products = entries

            self.db.add(flash_sale)
            self.db.commit()
            self.db.refresh(flash_sale)

            record_event("flash_sale_created", {"flash_sale_id": flash_sale.flashSaleID, "products": len(entries)})
            logger.info(f"Created flash sale {flash_sale.flashSaleID} with {len(entries)} products")
            return True, "Flash sale created successfully", flash_sale

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating flash sale: {e}")
            return False, f"Error creating flash sale: {str(e)}", None

    def update_flash_sale(
        self,
        flash_sale_id: int,
        updates: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str, Optional[FlashSale]]:
        """Update basic fields and, optionally, the product list; sold quantities are preserved."""
        try:
            flash_sale = self.get_flash_sale_by_id(flash_sale_id)
            if not flash_sale:
                return False, "Flash sale not found", None

            for field in ("name", "description", "priority", "banner"):
                if field in updates and updates[field] is not None:
                    setattr(flash_sale, field, updates[field])
            if "is_active" in updates and updates["is_active"] is not None:
                flash_sale.is_active = bool(updates["is_active"])
            if updates.get("start_date") is not None:
                flash_sale.start_date = to_naive_utc(updates["start_date"])
            if updates.get("end_date") is not None:
                flash_sale.end_date = to_naive_utc(updates["end_date"])
            if flash_sale.end_date <= flash_sale.start_date:
                self.db.rollback()
                return False, "End date must be after start date", None

            if updates.get("products") is not None:
                sold_quantities = {entry.productID: entry.sold_quantity for entry in flash_sale.products}
                entries, errors = self._validate_products(
                    updates["products"],
                    exclude_sale_id=flash_sale_id,
                    sold_quantities=sold_quantities,
                    now=now,
                )
                if errors:
                    self.db.rollback()
                    return False, "Stock validation failed: " + "; ".join(errors), None
                if not entries:
                    self.db.rollback()
                    return False, "No valid products for flash sale", None

                flash_sale.products.clear()
                self.db.flush()
                flash_sale.products.extend(entries)

            self.db.commit()
            self.db.refresh(flash_sale)
            logger.info(f"Updated flash sale {flash_sale_id}")
            return True, "Flash sale updated successfully", flash_sale

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating flash sale: {e}")
            return False, f"Error updating flash sale: {str(e)}", None

    def delete_flash_sale(self, flash_sale_id: int, now: Optional[datetime] = None) -> Tuple[bool, str]:
        try:
            flash_sale = self.get_flash_sale_by_id(flash_sale_id)
            if not flash_sale:
                return False, "Flash sale not found"

            if flash_sale.is_currently_active(now):
                total_sold = sum(entry.sold_quantity or 0 for entry in flash_sale.products)
                if total_sold > 0:
                    return False, "Cannot delete active flash sale with sold items"

            self.db.delete(flash_sale)
            self.db.commit()
            logger.info(f"Deleted flash sale {flash_sale_id}")
            return True, "Flash sale deleted successfully"

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting flash sale: {e}")
            return False, f"Error deleting flash sale: {str(e)}"

    def toggle_flash_sale(self, flash_sale_id: int) -> Tuple[bool, str, Optional[FlashSale]]:
        try:
            flash_sale = self.get_flash_sale_by_id(flash_sale_id)
            if not flash_sale:
                return False, "Flash sale not found", None

            flash_sale.is_active = not flash_sale.is_active
            self.db.commit()
            state = "activated" if flash_sale.is_active else "deactivated"
            logger.info(f"Flash sale {flash_sale_id} {state}")
            return True, f"Flash sale {state}", flash_sale

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error toggling flash sale: {e}")
            return False, f"Error toggling flash sale: {str(e)}", None

    def list_flash_sales(
        self,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = to_naive_utc(now) or utcnow()
        query = self.db.query(FlashSale)
        if status == "active":
            query = query.filter(
                FlashSale.is_active.is_(True), FlashSale.start_date <= now, FlashSale.end_date >= now
            )
        elif status == "upcoming":
            query = query.filter(FlashSale.is_active.is_(True), FlashSale.start_date > now)
        elif status == "ended":
            query = query.filter(FlashSale.end_date < now)

        page = max(1, page)
        total = query.count()
        sales = (
            query.order_by(FlashSale.created_at.desc(), FlashSale.flashSaleID.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return {
            "flash_sales": sales,
            "pagination": {
                "page": page,
                "pages": math.ceil(total / per_page) if per_page else 0,
                "total": total,
            },
        }

    def summarize(self, flash_sale: FlashSale) -> Dict[str, Any]:
        """Read-only aggregates over a sale's entries."""
        entries = list(flash_sale.products)
        count = len(entries)
        average_discount = (
            float(sum(Decimal(str(e.discount_percentage or 0)) for e in entries) / count) if count else 0.0
        )
        return {
            "total_products": count,
            "total_sold": sum(e.sold_quantity or 0 for e in entries),
            "total_revenue": sum(e.discount_price * (e.sold_quantity or 0) for e in entries),
            "average_discount": average_discount,
            "products_out_of_stock": sum(1 for e in entries if e.sold_quantity >= e.max_quantity),
        }

    def get_statistics(self, flash_sale_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        flash_sale = self.get_flash_sale_by_id(flash_sale_id)
        if flash_sale is None:
            raise ResourceNotFound("FlashSale", flash_sale_id)

        products = []
        for entry in flash_sale.products:
            products.append(
                {
                    "product_id": entry.productID,
                    "name": entry.product.name if entry.product else None,
                    "sold_quantity": entry.sold_quantity,
                    "max_quantity": entry.max_quantity,
                    "current_stock": self.stock_ledger.total_stock(entry.productID),
                    "revenue": entry.discount_price * (entry.sold_quantity or 0),
                    "sell_through_rate": (entry.sold_quantity or 0) / (entry.max_quantity or 1) * 100,
                }
            )

        return {
            "overall": self.summarize(flash_sale),
            "products": products,
            "is_currently_active": flash_sale.is_currently_active(now),
            "time_remaining": flash_sale.time_remaining(now),
        }
