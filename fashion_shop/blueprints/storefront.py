from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request, session

from fashion_shop.blueprints.serializers import (
    clean_text,
    jsonable,
    parse_int,
    serialize_cart,
    serialize_flash_product,
    serialize_flash_sale,
    serialize_order,
    serialize_voucher,
)
from fashion_shop.database import get_db
from fashion_shop.errors import InvalidRequest, ResourceNotFound
from fashion_shop.models import utcnow
from fashion_shop.services.notification_service import NotificationService
from fashion_shop.services.order_service import OrderService

storefront_bp = Blueprint("storefront", __name__)


def _get_order_service() -> OrderService:
    return OrderService(get_db())


def _not_authenticated():
    return jsonify({"success": False, "error": "NOT_AUTHENTICATED", "message": "Not authenticated"}), 401


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _cart_response(cart, status: int = 200, **extra: Any):
    response: Dict[str, Any] = {"success": True, "cart": serialize_cart(cart)}
    response.update(extra)
    return jsonify(response), status


# ---------------------------------------------------------------------- #
# Cart
# ---------------------------------------------------------------------- #


@storefront_bp.route("/api/cart", methods=["GET"])
def api_get_cart():
    if "user_id" not in session:
        return _not_authenticated()
    cart, changed = _get_order_service().carts.get_cart(session["user_id"])
    return _cart_response(cart, cart_changed=changed)


@storefront_bp.route("/api/cart/items", methods=["POST"])
def api_add_to_cart():
    if "user_id" not in session:
        return _not_authenticated()

    payload = _payload()
    product_id = parse_int(payload.get("product_id"), "product_id")
    if product_id is None:
        raise InvalidRequest("product_id is required")

    cart = _get_order_service().carts.add_item(
        session["user_id"],
        product_id,
        parse_int(payload.get("quantity"), "quantity", default=1),
        size=payload.get("size"),
        color=payload.get("color"),
    )
    return _cart_response(cart, 201, message="Added to cart")


@storefront_bp.route("/api/cart/items/<int:item_id>", methods=["PUT"])
def api_update_cart_item(item_id: int):
    if "user_id" not in session:
        return _not_authenticated()

    quantity = parse_int(_payload().get("quantity"), "quantity")
    cart = _get_order_service().carts.update_item_quantity(session["user_id"], item_id, quantity)
    return _cart_response(cart, message="Cart updated")


@storefront_bp.route("/api/cart/items/<int:item_id>", methods=["DELETE"])
def api_remove_cart_item(item_id: int):
    if "user_id" not in session:
        return _not_authenticated()
    cart = _get_order_service().carts.remove_item(session["user_id"], item_id)
    return _cart_response(cart, message="Item removed")


@storefront_bp.route("/api/cart", methods=["DELETE"])
def api_clear_cart():
    if "user_id" not in session:
        return _not_authenticated()
    cart = _get_order_service().carts.clear(session["user_id"])
    return _cart_response(cart, message="Cart cleared")


@storefront_bp.route("/api/cart/check-availability", methods=["POST"])
def api_check_availability():
    if "user_id" not in session:
        return _not_authenticated()

    result = _get_order_service().carts.check_availability(session["user_id"])
    return jsonify(
        {
            "success": True,
            "available": result["available"],
            "unavailable_items": result["unavailable_items"],
            "updated_items": result["updated_items"],
            "cart": serialize_cart(result["cart"]),
        }
    )


@storefront_bp.route("/api/cart/summary", methods=["GET"])
def api_cart_summary():
    if "user_id" not in session:
        return _not_authenticated()
    summary = _get_order_service().carts.get_summary(session["user_id"])
    return jsonify({"success": True, "summary": jsonable(summary)})


# ---------------------------------------------------------------------- #
# Vouchers
# ---------------------------------------------------------------------- #


@storefront_bp.route("/api/vouchers/validate", methods=["POST"])
def api_validate_voucher():
    """Preview a voucher against the current cart without consuming it."""
    if "user_id" not in session:
        return _not_authenticated()

    code = (_payload().get("code") or "").strip()
    if not code:
        raise InvalidRequest("Voucher code is required")

    service = _get_order_service()
    cart, _ = service.carts.get_cart(session["user_id"])
    if not cart.items:
        raise InvalidRequest("Cart is empty")

    quote = service.vouchers.validate_and_apply(
        code,
        session["user_id"],
        cart.total_price,
        service.carts.priced_lines(cart.items),
    )
    return jsonify(
        {
            "success": True,
            "message": "Voucher applied successfully",
            "voucher": serialize_voucher(quote.voucher),
            "discount_amount": quote.discount_amount,
            "applicable_amount": quote.applicable_amount,
            "final_amount": quote.final_amount,
        }
    )


# ---------------------------------------------------------------------- #
# Flash sales
# ---------------------------------------------------------------------- #


@storefront_bp.route("/api/flash-sales/active", methods=["GET"])
def api_active_flash_sales():
    now = utcnow()
    sales = _get_order_service().flash_sales.get_active_sales(now)
    return jsonify({"success": True, "flash_sales": [serialize_flash_sale(sale, now) for sale in sales]})


@storefront_bp.route("/api/flash-sales/upcoming", methods=["GET"])
def api_upcoming_flash_sales():
    now = utcnow()
    sales = _get_order_service().flash_sales.get_upcoming_sales(now)
    return jsonify({"success": True, "flash_sales": [serialize_flash_sale(sale, now) for sale in sales]})


@storefront_bp.route("/api/flash-sales/<int:flash_sale_id>", methods=["GET"])
def api_flash_sale_detail(flash_sale_id: int):
    sale = _get_order_service().flash_sales.get_flash_sale_by_id(flash_sale_id)
    if sale is None:
        raise ResourceNotFound("FlashSale", flash_sale_id)
    return jsonify({"success": True, "flash_sale": serialize_flash_sale(sale)})


@storefront_bp.route("/api/flash-sales/product/<int:product_id>", methods=["GET"])
def api_product_flash_offer(product_id: int):
    offer = _get_order_service().flash_sales.find_eligible_offer(product_id)
    if offer is None:
        return jsonify({"success": True, "flash_sale": None})
    sale, entry = offer
    return jsonify(
        {
            "success": True,
            "flash_sale": serialize_flash_sale(sale, include_products=False),
            "offer": serialize_flash_product(entry),
        }
    )


# ---------------------------------------------------------------------- #
# Orders
# ---------------------------------------------------------------------- #


@storefront_bp.route("/api/orders", methods=["POST"])
def api_create_order():
    if "user_id" not in session:
        return _not_authenticated()

    payload = _payload()
    payment_method = payload.get("payment_method")
    if not payment_method:
        raise InvalidRequest("payment_method is required")

    selected = payload.get("selected_item_ids")
    if selected is not None and not isinstance(selected, list):
        raise InvalidRequest("selected_item_ids must be a list")

    placement = _get_order_service().create_order(
        session["user_id"],
        payment_method,
        shipping_address=clean_text(payload.get("shipping_address")),
        voucher_code=payload.get("voucher_code") or None,
        selected_item_ids=selected,
    )
    return (
        jsonify(
            {
                "success": True,
                "message": "Order placed successfully",
                "order": serialize_order(placement.order),
                "cart_changed": placement.cart_changed,
            }
        ),
        201,
    )


@storefront_bp.route("/api/orders", methods=["GET"])
def api_list_orders():
    if "user_id" not in session:
        return _not_authenticated()

    result = _get_order_service().list_orders(
        user_id=session["user_id"],
        status=request.args.get("status"),
        page=parse_int(request.args.get("page"), "page", default=1),
        per_page=parse_int(request.args.get("per_page"), "per_page", default=10),
    )
    return jsonify(
        {
            "success": True,
            "orders": [serialize_order(order, include_items=False) for order in result["orders"]],
            "total": result["total"],
            "page": result["page"],
            "pages": result["pages"],
        }
    )


@storefront_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def api_order_detail(order_id: int):
    if "user_id" not in session:
        return _not_authenticated()
    order = _get_order_service().get_order(order_id, session["user_id"])
    return jsonify({"success": True, "order": serialize_order(order)})


@storefront_bp.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
def api_cancel_order(order_id: int):
    if "user_id" not in session:
        return _not_authenticated()

    reason: Optional[str] = clean_text(_payload().get("reason"))
    order = _get_order_service().cancel_order(order_id, user_id=session["user_id"], reason=reason)
    return jsonify({"success": True, "message": "Order cancelled", "order": serialize_order(order)})


@storefront_bp.route("/api/orders/<int:order_id>/payment-deadline", methods=["GET"])
def api_payment_deadline(order_id: int):
    if "user_id" not in session:
        return _not_authenticated()
    status = _get_order_service().get_payment_deadline_status(order_id, session["user_id"])
    return jsonify({"success": True, **jsonable(status)})


@storefront_bp.route("/api/orders/<int:order_id>/bank-transfer", methods=["GET"])
def api_bank_transfer_info(order_id: int):
    if "user_id" not in session:
        return _not_authenticated()
    info = _get_order_service().get_bank_transfer_info(order_id, session["user_id"])
    return jsonify({"success": True, "bank_transfer": jsonable(info)})


# ---------------------------------------------------------------------- #
# Notifications
# ---------------------------------------------------------------------- #


@storefront_bp.route("/api/notifications", methods=["GET"])
def api_notifications():
    if "user_id" not in session:
        return _not_authenticated()

    inbox = NotificationService()
    unread_only = request.args.get("unread_only", "").lower() in {"1", "true", "yes"}
    return jsonify(
        {
            "success": True,
            "notifications": inbox.get_notifications(session["user_id"], unread_only=unread_only),
            "unread_count": inbox.get_unread_count(session["user_id"]),
        }
    )


@storefront_bp.route("/api/notifications/read", methods=["POST"])
def api_mark_notifications_read():
    if "user_id" not in session:
        return _not_authenticated()
    marked = NotificationService().mark_all_as_read(session["user_id"])
    return jsonify({"success": True, "marked": marked})
