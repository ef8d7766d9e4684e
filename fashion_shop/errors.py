"""Domain errors raised by the inventory and promotion consistency services."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base class for user-facing failures carrying a stable error code."""

    code = "SHOP_ERROR"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        payload.update(self.details)
        return payload


class InvalidRequest(ShopError):
    code = "INVALID_REQUEST"


class ResourceNotFound(ShopError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(f"{resource} not found", resource=resource, id=identifier)


class InsufficientStock(ShopError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(
        self,
        product_id: int,
        size: Optional[str],
        color: Optional[str],
        requested: int,
        available: int,
        product_name: Optional[str] = None,
    ) -> None:
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label} ({size}/{color}): requested {requested}, available {available}",
            product_id=product_id,
            size=size,
            color=color,
            requested=requested,
            available=available,
        )


class FlashSaleSoldOut(ShopError):
    code = "FLASH_SALE_SOLD_OUT"
    http_status = 409

    def __init__(self, flash_sale_id: int, product_id: int, requested: int, remaining: int) -> None:
        super().__init__(
            f"Flash sale limit: only {remaining} items available",
            flash_sale_id=flash_sale_id,
            product_id=product_id,
            requested=requested,
            remaining=remaining,
        )


class FlashSaleExpired(ShopError):
    """Raised when an offer is referenced after its sale stopped being active."""

    code = "FLASH_SALE_EXPIRED"

    def __init__(self, flash_sale_id: int, product_id: Optional[int] = None) -> None:
        super().__init__(
            "Flash sale is no longer active",
            flash_sale_id=flash_sale_id,
            product_id=product_id,
        )


class VoucherRejection(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXHAUSTED = "EXHAUSTED"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    USER_LIMIT_REACHED = "USER_LIMIT_REACHED"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"
    NO_APPLICABLE_ITEMS = "NO_APPLICABLE_ITEMS"


class VoucherInvalid(ShopError):
    code = "VOUCHER_INVALID"

    def __init__(self, reason: VoucherRejection, message: str, **details: Any) -> None:
        super().__init__(message, reason=reason.value, **details)
        self.reason = reason


class OrderNotCancellable(ShopError):
    code = "ORDER_NOT_CANCELLABLE"
    http_status = 409

    def __init__(self, order_id: int, order_status: str) -> None:
        super().__init__(
            f"Order cannot be cancelled while {order_status}",
            order_id=order_id,
            order_status=order_status,
        )


class InvalidStatusTransition(ShopError):
    code = "INVALID_STATUS_TRANSITION"
    http_status = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid status transition from {current} to {requested}",
            current_status=current,
            requested_status=requested,
        )


class OrderCreationFailed(ShopError):
    """A debit or reservation failed mid-sequence; completed steps were compensated."""

    code = "ORDER_CREATION_FAILED"
    http_status = 409

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        details: Dict[str, Any] = {}
        if isinstance(cause, ShopError):
            details.update(cause.details)
            details["cause"] = cause.code
        super().__init__(message, **details)
        self.cause = cause


def root_cause(error: ShopError) -> ShopError:
    """Unwrap OrderCreationFailed so callers can show the original reason verbatim."""
    cause = getattr(error, "cause", None)
    if isinstance(cause, ShopError):
        return cause
    return error
