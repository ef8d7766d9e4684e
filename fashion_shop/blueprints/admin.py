from __future__ import annotations

from typing import Any, Dict, List, Optional

from flask import Blueprint, current_app, g, jsonify, request, session

from fashion_shop.blueprints.serializers import (
    clean_text,
    jsonable,
    parse_datetime,
    parse_int,
    serialize_flash_sale,
    serialize_order,
    serialize_product,
    serialize_voucher,
)
from fashion_shop.config import Config
from fashion_shop.database import get_db
from fashion_shop.errors import InvalidRequest, ResourceNotFound
from fashion_shop.models import utcnow
from fashion_shop.services.catalog_service import CatalogService
from fashion_shop.services.order_service import OrderService

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

_DATE_FIELDS = ("start_date", "end_date")
_TEXT_FIELDS = ("name", "description")


def _is_admin() -> bool:
    user = getattr(g, "current_user", None)
    return user is not None and user.is_admin


@admin_bp.before_request
def _require_admin():
    if "user_id" not in session:
        return jsonify({"success": False, "error": "NOT_AUTHENTICATED", "message": "Not authenticated"}), 401
    if not _is_admin():
        return jsonify({"success": False, "error": "FORBIDDEN", "message": "Admin access required"}), 403
    return None


def _get_order_service() -> OrderService:
    return OrderService(get_db())


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _form_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(payload)
    for field in _DATE_FIELDS:
        if field in data:
            data[field] = parse_datetime(data[field], field)
    for field in _TEXT_FIELDS:
        if field in data:
            data[field] = clean_text(data[field])
    return data


def _page_args() -> Dict[str, int]:
    return {
        "page": parse_int(request.args.get("page"), "page", default=1),
        "per_page": parse_int(request.args.get("per_page"), "per_page", default=Config.ADMIN_PAGE_SIZE),
    }


def _result(success: bool, message: str, key: Optional[str] = None, obj: Any = None, created: bool = False):
    response: Dict[str, Any] = {"success": success, "message": message}
    if key and obj is not None:
        response[key] = obj
    if not success:
        return jsonify(response), 400
    return jsonify(response), 201 if created else 200


# ---------------------------------------------------------------------- #
# Flash sales
# ---------------------------------------------------------------------- #


@admin_bp.route("/flash-sales", methods=["GET"])
def list_flash_sales():
    now = utcnow()
    service = _get_order_service().flash_sales
    result = service.list_flash_sales(status=request.args.get("status"), now=now, **_page_args())
    sales = []
    for sale in result["flash_sales"]:
        payload = serialize_flash_sale(sale, now, include_products=False)
        payload["stats"] = service.summarize(sale)
        sales.append(payload)
    return jsonify({"success": True, "flash_sales": sales, "pagination": result["pagination"]})


@admin_bp.route("/flash-sales", methods=["POST"])
def create_flash_sale():
    payload = _payload()
    products = payload.get("products") or []
    if not isinstance(products, list):
        raise InvalidRequest("products must be a list")

    success, message, sale = _get_order_service().flash_sales.create_flash_sale(
        name=clean_text(payload.get("name")) or "",
        start_date=parse_datetime(payload.get("start_date"), "start_date"),
        end_date=parse_datetime(payload.get("end_date"), "end_date"),
        products=products,
        description=clean_text(payload.get("description")) or "",
        priority=parse_int(payload.get("priority"), "priority", default=0),
        is_active=payload.get("is_active", True),
        banner=payload.get("banner"),
        created_by=session["user_id"],
    )
    return _result(success, message, "flash_sale", serialize_flash_sale(sale) if sale else None, created=True)


@admin_bp.route("/flash-sales/<int:flash_sale_id>", methods=["GET"])
def get_flash_sale(flash_sale_id: int):
    service = _get_order_service().flash_sales
    sale = service.get_flash_sale_by_id(flash_sale_id)
    if sale is None:
        raise ResourceNotFound("FlashSale", flash_sale_id)
    payload = serialize_flash_sale(sale)
    payload["stats"] = service.summarize(sale)
    return jsonify({"success": True, "flash_sale": payload})


@admin_bp.route("/flash-sales/<int:flash_sale_id>", methods=["PUT"])
def update_flash_sale(flash_sale_id: int):
    success, message, sale = _get_order_service().flash_sales.update_flash_sale(
        flash_sale_id, _form_fields(_payload())
    )
    return _result(success, message, "flash_sale", serialize_flash_sale(sale) if sale else None)


@admin_bp.route("/flash-sales/<int:flash_sale_id>", methods=["DELETE"])
def delete_flash_sale(flash_sale_id: int):
    success, message = _get_order_service().flash_sales.delete_flash_sale(flash_sale_id)
    return _result(success, message)


@admin_bp.route("/flash-sales/<int:flash_sale_id>/toggle", methods=["POST"])
def toggle_flash_sale(flash_sale_id: int):
    success, message, sale = _get_order_service().flash_sales.toggle_flash_sale(flash_sale_id)
    return _result(success, message, "flash_sale", serialize_flash_sale(sale) if sale else None)


@admin_bp.route("/flash-sales/<int:flash_sale_id>/statistics", methods=["GET"])
def flash_sale_statistics(flash_sale_id: int):
    stats = _get_order_service().flash_sales.get_statistics(flash_sale_id)
    return jsonify({"success": True, "statistics": jsonable(stats)})


@admin_bp.route("/flash-sales/check-stock", methods=["GET"])
def flash_sale_check_stock():
    product_id = parse_int(request.args.get("product_id"), "product_id")
    if product_id is None:
        raise InvalidRequest("product_id is required")
    result = _get_order_service().flash_sales.check_stock(
        product_id,
        requested_quantity=parse_int(request.args.get("quantity"), "quantity", default=0),
        exclude_sale_id=parse_int(request.args.get("exclude_sale_id"), "exclude_sale_id"),
    )
    return jsonify({"success": True, **result})


@admin_bp.route("/flash-sales/products-with-stock", methods=["GET"])
def flash_sale_products_with_stock():
    products = _get_order_service().flash_sales.products_with_stock(search=request.args.get("search"))
    return jsonify({"success": True, "products": products})


# ---------------------------------------------------------------------- #
# Vouchers
# ---------------------------------------------------------------------- #


@admin_bp.route("/vouchers", methods=["GET"])
def list_vouchers():
    now = utcnow()
    result = _get_order_service().vouchers.list_vouchers(
        status=request.args.get("status"),
        search=request.args.get("search"),
        now=now,
        **_page_args(),
    )
    return jsonify(
        {
            "success": True,
            "vouchers": [serialize_voucher(voucher, now) for voucher in result["vouchers"]],
            "total": result["total"],
            "page": result["page"],
            "pages": result["pages"],
        }
    )


@admin_bp.route("/vouchers", methods=["POST"])
def create_voucher():
    success, message, voucher = _get_order_service().vouchers.create_voucher(
        _form_fields(_payload()), created_by=session["user_id"]
    )
    return _result(success, message, "voucher", serialize_voucher(voucher) if voucher else None, created=True)


@admin_bp.route("/vouchers/<int:voucher_id>", methods=["GET"])
def get_voucher(voucher_id: int):
    voucher = _get_order_service().vouchers.get_voucher(voucher_id)
    if voucher is None:
        raise ResourceNotFound("Voucher", voucher_id)
    return jsonify({"success": True, "voucher": serialize_voucher(voucher)})


@admin_bp.route("/vouchers/<int:voucher_id>", methods=["PUT"])
def update_voucher(voucher_id: int):
    success, message, voucher = _get_order_service().vouchers.update_voucher(voucher_id, _form_fields(_payload()))
    return _result(success, message, "voucher", serialize_voucher(voucher) if voucher else None)


@admin_bp.route("/vouchers/<int:voucher_id>", methods=["DELETE"])
def delete_voucher(voucher_id: int):
    success, message = _get_order_service().vouchers.delete_voucher(voucher_id)
    return _result(success, message)


@admin_bp.route("/vouchers/<int:voucher_id>/toggle", methods=["POST"])
def toggle_voucher(voucher_id: int):
    success, message, voucher = _get_order_service().vouchers.toggle_voucher(voucher_id)
    return _result(success, message, "voucher", serialize_voucher(voucher) if voucher else None)


@admin_bp.route("/vouchers/<int:voucher_id>/stats", methods=["GET"])
def voucher_stats(voucher_id: int):
    stats = _get_order_service().vouchers.get_usage_statistics(voucher_id)
    return jsonify({"success": True, "statistics": jsonable(stats)})


@admin_bp.route("/vouchers/generate-bulk", methods=["POST"])
def generate_bulk_vouchers():
    payload = _payload()
    count = parse_int(payload.get("count"), "count", default=0)
    template = _form_fields(payload.get("voucher") or {})

    result = _get_order_service().vouchers.generate_bulk(
        count,
        template,
        prefix=payload.get("prefix") or "",
        created_by=session["user_id"],
    )
    vouchers: List[Dict[str, Any]] = [serialize_voucher(voucher) for voucher in result["vouchers"]]
    success = bool(vouchers)
    return (
        jsonify(
            {
                "success": success,
                "message": f"Generated {len(vouchers)} voucher(s)",
                "vouchers": vouchers,
                "errors": result["errors"],
            }
        ),
        201 if success else 400,
    )


# ---------------------------------------------------------------------- #
# Orders
# ---------------------------------------------------------------------- #


@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    result = _get_order_service().list_orders(
        user_id=parse_int(request.args.get("user_id"), "user_id"),
        status=request.args.get("status"),
        **_page_args(),
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


@admin_bp.route("/orders/stats", methods=["GET"])
def order_stats():
    return jsonify({"success": True, "statistics": _get_order_service().get_order_statistics()})


@admin_bp.route("/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    order = _get_order_service().get_order(order_id)
    return jsonify({"success": True, "order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/status", methods=["PUT"])
def update_order_status(order_id: int):
    new_status = _payload().get("status")
    if not new_status:
        raise InvalidRequest("status is required")
    order = _get_order_service().update_status(order_id, new_status)
    return jsonify({"success": True, "message": f"Order status updated to {new_status}", "order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/cancel", methods=["POST"])
def cancel_order(order_id: int):
    reason = clean_text(_payload().get("reason")) or "Cancelled by admin"
    order = _get_order_service().cancel_order(order_id, reason=reason)
    return jsonify({"success": True, "message": "Order cancelled", "order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/confirm-payment", methods=["POST"])
def confirm_payment(order_id: int):
    order = _get_order_service().confirm_payment(order_id)
    return jsonify({"success": True, "message": "Payment confirmed", "order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/refund", methods=["POST"])
def refund_order(order_id: int):
    order = _get_order_service().refund_order(order_id)
    return jsonify({"success": True, "message": "Order refunded", "order": serialize_order(order)})


# ---------------------------------------------------------------------- #
# Products & customers
# ---------------------------------------------------------------------- #


@admin_bp.route("/products", methods=["GET"])
def list_products():
    products = CatalogService(get_db()).list_products(category=request.args.get("category"))
    return jsonify({"success": True, "products": [serialize_product(product) for product in products]})


@admin_bp.route("/products", methods=["POST"])
def create_product():
    payload = _payload()
    success, message, product = CatalogService(get_db()).create_product(
        name=clean_text(payload.get("name")) or "",
        price=parse_int(payload.get("price"), "price"),
        category=payload.get("category"),
        brand=payload.get("brand"),
        description=clean_text(payload.get("description")),
        stock=payload.get("stock") or [],
    )
    return _result(success, message, "product", serialize_product(product) if product else None, created=True)


@admin_bp.route("/products/<int:product_id>/stock", methods=["PUT"])
def update_product_stock(product_id: int):
    payload = _payload()
    delta = parse_int(payload.get("delta"), "delta")
    quantity = parse_int(payload.get("quantity"), "quantity")
    if delta is None and quantity is None:
        raise InvalidRequest("Either delta or quantity is required")

    catalog = CatalogService(get_db())
    try:
        new_quantity = catalog.update_stock(
            product_id, payload.get("size"), payload.get("color"), delta=delta, quantity=quantity
        )
    except ValueError as exc:
        raise InvalidRequest(str(exc))
    return jsonify(
        {
            "success": True,
            "message": "Stock updated",
            "quantity": new_quantity,
            "product": serialize_product(catalog.get_product(product_id)),
        }
    )


@admin_bp.route("/customers/<int:user_id>/analytics", methods=["GET"])
def customer_analytics(user_id: int):
    analytics = _get_order_service().analytics.get_analytics(user_id)
    return jsonify({"success": True, "analytics": jsonable(analytics)})


# ---------------------------------------------------------------------- #
# Background jobs
# ---------------------------------------------------------------------- #


def _jobs():
    jobs = current_app.extensions.get("background_jobs")
    if jobs is None:
        raise ResourceNotFound("BackgroundJobs", "default")
    return jobs


@admin_bp.route("/jobs", methods=["GET"])
def jobs_status():
    return jsonify({"success": True, "jobs": jsonable(_jobs().status())})


@admin_bp.route("/jobs/<name>/run", methods=["POST"])
def run_job(name: str):
    result = _jobs().run(name)
    if result is None:
        raise ResourceNotFound("Job", name)
    return jsonify({"success": True, "job": name, "processed": result})
