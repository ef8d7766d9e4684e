from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fashion_shop.config import Config
from fashion_shop.errors import FlashSaleSoldOut, InsufficientStock, InvalidRequest, ResourceNotFound
from fashion_shop.models import Cart, CartItem, Product, to_naive_utc, utcnow
from fashion_shop.observability.metrics import increment_counter
from fashion_shop.services.flash_sale_service import FlashSaleService
from fashion_shop.services.stock_ledger import StockLedger
from fashion_shop.services.voucher_service import PricedLine


class CartService:
    """
    Saved carts whose prices are re-derived from live flash sale and catalog
    state. Stored item prices are snapshots; ``reconcile`` is what makes them
    trustworthy again.
    """

    def __init__(
        self,
        db_session: Session,
        flash_sales: Optional[FlashSaleService] = None,
        stock_ledger: Optional[StockLedger] = None,
    ) -> None:
        self.db = db_session
        self.stock_ledger = stock_ledger or StockLedger(db_session)
        self.flash_sales = flash_sales or FlashSaleService(db_session, self.stock_ledger)
        self.logger = logging.getLogger(__name__)

    def get_or_create_cart(self, user_id: int) -> Cart:
        cart = self.db.query(Cart).filter_by(userID=user_id).first()
        if cart is None:
            cart = Cart(userID=user_id, total_price=0, total_discount=0)
            self.db.add(cart)
            self.db.commit()
            self.db.refresh(cart)
        return cart

    def _find_item(self, cart: Cart, item_id: int) -> CartItem:
        for item in cart.items:
            if item.cartItemID == item_id:
                return item
        raise ResourceNotFound("CartItem", item_id)

    # ------------------------------------------------------------------ #
    # Reconciliation
    # ------------------------------------------------------------------ #

    def reconcile(self, cart: Cart, now: Optional[datetime] = None, commit: bool = True) -> Tuple[Cart, bool]:
        """
        Re-resolve every flash sale item against the live offer.

        Items whose offer ended, was deactivated, sold out or was removed fall
        back to the regular price with their flash sale fields cleared. Items
        that are still eligible are repriced when the discount price moved.
        Totals are always recomputed from scratch.
        """
        now = to_naive_utc(now) or utcnow()
        changed = False

        for item in cart.items:
            product = item.product
            if item.is_flash_sale_item:
                offer = self.flash_sales.find_eligible_offer(item.productID, now)
                if offer is None:
                    self.logger.info(
                        "Cart %s item %s no longer eligible for flash sale %s; reverting to regular price",
                        cart.cartID,
                        item.cartItemID,
                        item.flashSaleID,
                    )
                    item.clear_flash_sale(product.price)
                    increment_counter("cart_items_demoted_total")
                    changed = True
                    continue

                sale, entry = offer
                if item.flashSaleID != sale.flashSaleID:
                    item.snapshot_added_at = None
                    changed = True
                elif item.price != entry.discount_price:
                    changed = True
                item.apply_flash_offer(sale, entry, now)
            elif item.price != product.price:
                item.price = product.price
                changed = True

        cart.calculate_totals()
        if commit:
            self.db.commit()
        if changed:
            increment_counter("cart_reconciliations_changed_total")
        return cart, changed

    def get_cart(self, user_id: int, now: Optional[datetime] = None) -> Tuple[Cart, bool]:
        """Cart for display. Reconciliation here is best effort."""
        cart = self.get_or_create_cart(user_id)
        try:
            return self.reconcile(cart, now)
        except SQLAlchemyError:
            self.db.rollback()
            self.logger.exception("Advisory cart reconciliation failed for user %s", user_id)
            cart = self.get_or_create_cart(user_id)
            return cart, False

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def add_item(
        self,
        user_id: int,
        product_id: int,
        quantity: int,
        size: Optional[str] = None,
        color: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Cart:
        now = to_naive_utc(now) or utcnow()
        if quantity is None or quantity < 1:
            raise InvalidRequest("Quantity must be at least 1")

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise ResourceNotFound("Product", product_id)

        size = (size or "").strip()
        color = (color or "").strip()
        cart = self.get_or_create_cart(user_id)
        existing = next(
            (i for i in cart.items if i.productID == product_id and i.size == size and i.color == color),
            None,
        )
        total_quantity = quantity + (existing.quantity if existing else 0)

        available = self.stock_ledger.get_available(product_id, size, color)
        if available < total_quantity:
            raise InsufficientStock(product_id, size, color, total_quantity, available, product.name)

        offer = self.flash_sales.find_eligible_offer(product_id, now)
        if offer is not None:
            sale, entry = offer
            if total_quantity > entry.available_quantity:
                raise FlashSaleSoldOut(sale.flashSaleID, product_id, total_quantity, entry.available_quantity)

        item = existing
        if item is None:
            item = CartItem(productID=product_id, size=size, color=color, quantity=quantity, price=product.price)
            item.product = product
            cart.items.append(item)
        else:
            item.quantity = total_quantity

        if offer is not None:
            item.apply_flash_offer(offer[0], offer[1], now)
        elif item.is_flash_sale_item:
            item.clear_flash_sale(product.price)
        else:
            item.price = product.price

        cart.calculate_totals()
        self.db.commit()
        self.logger.info(
            "Added %d x product %d (%s/%s) to cart %s",
            quantity,
            product_id,
            size,
            color,
            cart.cartID,
        )
        return cart

    def update_item_quantity(
        self,
        user_id: int,
        item_id: int,
        quantity: int,
        now: Optional[datetime] = None,
    ) -> Cart:
        if quantity is None or quantity < 1:
            raise InvalidRequest("Quantity must be at least 1")

        cart = self.get_or_create_cart(user_id)
        item = self._find_item(cart, item_id)

        available = self.stock_ledger.get_available(item.productID, item.size, item.color)
        if available < quantity:
            raise InsufficientStock(
                item.productID, item.size, item.color, quantity, available, item.product.name
            )

        if item.is_flash_sale_item and item.flashSaleID:
            sale = self.flash_sales.get_flash_sale_by_id(item.flashSaleID)
            entry = sale.get_product_entry(item.productID) if sale else None
            if entry is not None and quantity > entry.available_quantity:
                raise FlashSaleSoldOut(sale.flashSaleID, item.productID, quantity, entry.available_quantity)

        item.quantity = quantity
        self.reconcile(cart, now)
        return cart

    def remove_item(self, user_id: int, item_id: int) -> Cart:
        cart = self.get_or_create_cart(user_id)
        item = self._find_item(cart, item_id)
        cart.items.remove(item)
        cart.calculate_totals()
        self.db.commit()
        return cart

    def remove_items(self, cart: Cart, item_ids: Iterable[int]) -> None:
        """Drop ordered lines. Does not commit; used inside order creation."""
        ids = set(item_ids)
        for item in [i for i in cart.items if i.cartItemID in ids]:
            cart.items.remove(item)
        cart.calculate_totals()

    def clear(self, user_id: int) -> Cart:
        cart = self.get_or_create_cart(user_id)
        cart.items.clear()
        cart.total_price = 0
        cart.total_discount = 0
        self.db.commit()
        return cart

    # ------------------------------------------------------------------ #
    # Checkout helpers
    # ------------------------------------------------------------------ #

    def check_availability(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Drop sold-out lines and clamp quantities to what stock and offers can cover."""
        cart = self.get_or_create_cart(user_id)
        if not cart.items:
            return {"available": True, "unavailable_items": [], "updated_items": [], "cart": cart}

        cart, _ = self.reconcile(cart, now, commit=False)
        unavailable: List[Dict[str, Any]] = []
        updated: List[Dict[str, Any]] = []

        for item in list(cart.items):
            name = item.product.name
            stock = self.stock_ledger.get_available(item.productID, item.size, item.color)
            if stock <= 0:
                unavailable.append({"product": name, "item_id": item.cartItemID, "reason": "Out of stock"})
                cart.items.remove(item)
                continue
            if stock < item.quantity:
                updated.append({"product": name, "item_id": item.cartItemID, "available": stock, "requested": item.quantity})
                item.quantity = stock

            if item.is_flash_sale_item:
                sale = self.flash_sales.get_flash_sale_by_id(item.flashSaleID)
                entry = sale.get_product_entry(item.productID) if sale else None
                remaining = entry.available_quantity if entry else 0
                if item.quantity > remaining:
                    updated.append(
                        {
                            "product": name,
                            "item_id": item.cartItemID,
                            "available": remaining,
                            "requested": item.quantity,
                            "reason": "Flash sale limit",
                        }
                    )
                    item.quantity = remaining

        cart.calculate_totals()
        self.db.commit()
        return {
            "available": not unavailable,
            "unavailable_items": unavailable,
            "updated_items": updated,
            "cart": cart,
        }

    def get_summary(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        cart = self.get_or_create_cart(user_id)
        if not cart.items:
            raise InvalidRequest("Cart is empty")

        cart, changed = self.reconcile(cart, now)
        shipping = Config.SHIPPING_FEE
        return {
            "items": [
                {
                    "item_id": item.cartItemID,
                    "product_id": item.productID,
                    "name": item.product.name,
                    "quantity": item.quantity,
                    "size": item.size,
                    "color": item.color,
                    "price": item.price,
                    "original_price": item.original_price,
                    "is_flash_sale": item.is_flash_sale_item,
                    "flash_sale_info": item.flash_sale_snapshot,
                    "subtotal": item.subtotal,
                }
                for item in cart.items
            ],
            "subtotal": cart.total_price,
            "flash_sale_discount": cart.total_discount,
            "shipping": shipping,
            "total": cart.total_price + shipping,
            "cart_changed": changed,
        }

    @staticmethod
    def priced_lines(items: Iterable[CartItem]) -> List[PricedLine]:
        return [
            PricedLine(
                product_id=item.productID,
                category=item.product.category,
                brand=item.product.brand,
                unit_price=item.price,
                quantity=item.quantity,
            )
            for item in items
        ]
