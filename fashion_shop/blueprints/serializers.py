"""JSON shapes shared by the storefront and admin blueprints."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import bleach

from fashion_shop.errors import InvalidRequest
from fashion_shop.models import (
    Cart,
    CartItem,
    FlashSale,
    FlashSaleProduct,
    Order,
    OrderItem,
    Product,
    Voucher,
)


def _serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def jsonable(value: Any) -> Any:
    """Recursively convert service payloads (datetimes, Decimals, enums) for jsonify."""
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value


def parse_datetime(value: Any, field: str) -> Optional[datetime]:
    """Accept ISO-8601 strings from JSON bodies; a trailing ``Z`` means UTC."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise InvalidRequest(f"Invalid datetime for {field}: {value}", field=field)


def parse_int(value: Any, field: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be an integer", field=field)


def clean_text(value: Any) -> Any:
    """Strip markup from free text typed into admin forms or checkout fields."""
    if value is None:
        return None
    if isinstance(value, dict):
        return {key: clean_text(item) for key, item in value.items()}
    if not isinstance(value, str):
        return value
    return bleach.clean(value, tags=[], strip=True).strip()


def serialize_product(product: Product) -> Dict[str, Any]:
    return {
        "id": product.productID,
        "name": product.name,
        "description": product.description,
        "price": product.price,
        "category": product.category,
        "brand": product.brand,
        "total_orders": product.total_orders,
        "total_stock": product.total_stock(),
        "variants": [
            {"size": variant.size, "color": variant.color, "quantity": variant.quantity}
            for variant in product.variants
        ],
    }


def serialize_flash_product(entry: FlashSaleProduct) -> Dict[str, Any]:
    return {
        "product_id": entry.productID,
        "name": entry.product.name if entry.product else None,
        "original_price": entry.original_price,
        "discount_percentage": float(entry.discount_percentage),
        "discount_price": entry.discount_price,
        "max_quantity": entry.max_quantity,
        "sold_quantity": entry.sold_quantity,
        "available_quantity": entry.available_quantity,
        "is_active": entry.is_active,
    }


def serialize_flash_sale(sale: FlashSale, now: Optional[datetime] = None, include_products: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": sale.flashSaleID,
        "name": sale.name,
        "description": sale.description,
        "start_date": _serialize_dt(sale.start_date),
        "end_date": _serialize_dt(sale.end_date),
        "is_active": sale.is_active,
        "priority": sale.priority,
        "banner": sale.banner,
        "status": sale.status_label(now),
        "is_currently_active": sale.is_currently_active(now),
        "time_remaining": sale.time_remaining(now),
    }
    if include_products:
        payload["products"] = [serialize_flash_product(entry) for entry in sale.products]
    return payload


def serialize_voucher(voucher: Voucher, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": voucher.voucherID,
        "code": voucher.code,
        "description": voucher.description,
        "discount_type": _enum_value(voucher.discount_type),
        "discount_value": float(voucher.discount_value),
        "min_order_amount": voucher.min_order_amount,
        "max_discount_amount": voucher.max_discount_amount,
        "quantity": voucher.quantity,
        "used_count": voucher.used_count,
        "remaining_quantity": voucher.remaining_quantity,
        "max_usage_per_user": voucher.max_usage_per_user,
        "start_date": _serialize_dt(voucher.start_date),
        "end_date": _serialize_dt(voucher.end_date),
        "is_active": voucher.is_active,
        "status": voucher.status_label(now),
        "applicable_categories": list(voucher.applicable_categories or []),
        "applicable_brands": list(voucher.applicable_brands or []),
        "excluded_product_ids": list(voucher.excluded_product_ids or []),
    }


def serialize_cart_item(item: CartItem) -> Dict[str, Any]:
    return {
        "id": item.cartItemID,
        "product_id": item.productID,
        "name": item.product.name if item.product else None,
        "size": item.size,
        "color": item.color,
        "quantity": item.quantity,
        "price": item.price,
        "original_price": item.original_price,
        "discount_percentage": float(item.discount_percentage) if item.discount_percentage is not None else None,
        "is_flash_sale": item.is_flash_sale_item,
        "flash_sale_id": item.flashSaleID,
        "flash_sale_info": jsonable(item.flash_sale_snapshot),
        "subtotal": item.subtotal,
        "savings": item.savings,
    }


def serialize_cart(cart: Cart) -> Dict[str, Any]:
    return {
        "id": cart.cartID,
        "items": [serialize_cart_item(item) for item in cart.items],
        "item_count": cart.item_count,
        "total_price": cart.total_price,
        "total_discount": cart.total_discount,
    }


def serialize_order_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "product_id": item.productID,
        "product_name": item.product_name,
        "size": item.size,
        "color": item.color,
        "quantity": item.quantity,
        "unit_price": item.unit_price,
        "original_price": item.original_price,
        "discount_percentage": float(item.discount_percentage) if item.discount_percentage is not None else None,
        "is_flash_sale": item.is_flash_sale_item,
        "flash_sale_id": item.flashSaleID,
        "subtotal": item.subtotal,
    }


def serialize_order(order: Order, include_items: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": order.orderID,
        "user_id": order.userID,
        "subtotal": order.subtotal,
        "flash_sale_discount": order.flash_sale_discount,
        "voucher_discount": order.voucher_discount,
        "voucher_code": order.voucher_code,
        "shipping_fee": order.shipping_fee,
        "total_amount": order.total_amount,
        "shipping_address": order.shipping_address,
        "payment_method": _enum_value(order.payment_method),
        "payment_status": _enum_value(order.payment_status),
        "order_status": _enum_value(order.order_status),
        "bank_transfer_reference": order.bank_transfer_reference,
        "bank_transfer_expired_at": _serialize_dt(order.bank_transfer_expired_at),
        "flash_sale_ids": list(order.flash_sale_ids or []),
        "cancellation_reason": order.cancellation_reason,
        "cancelled_at": _serialize_dt(order.cancelled_at),
        "refund_amount": order.refund_amount,
        "paid_at": _serialize_dt(order.paid_at),
        "shipped_at": _serialize_dt(order.shipped_at),
        "delivered_at": _serialize_dt(order.delivered_at),
        "created_at": _serialize_dt(order.created_at),
    }
    if include_items:
        payload["items"] = [serialize_order_item(item) for item in order.items]
    return payload
