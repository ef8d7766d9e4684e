from __future__ import annotations

import logging
import math
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fashion_shop.config import Config
from fashion_shop.errors import ResourceNotFound, VoucherInvalid, VoucherRejection
from fashion_shop.models import DiscountType, Voucher, VoucherUsage, to_naive_utc, utcnow
from fashion_shop.observability.metrics import increment_counter, record_event

CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,12}$")
CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class PricedLine:
    """One order line as the voucher engine sees it."""

    product_id: int
    category: Optional[str]
    brand: Optional[str]
    unit_price: int
    quantity: int

    @property
    def amount(self) -> int:
        return self.unit_price * self.quantity


@dataclass
class VoucherQuote:
    voucher: Voucher
    discount_amount: int
    final_amount: int
    applicable_amount: int


def generate_code(length: Optional[int] = None) -> str:
    length = length or Config.VOUCHER_CODE_LENGTH
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class VoucherService:
    """
    Voucher validation, discount computation and usage accounting.

    ``validate_and_apply`` is read-only. The actual claim happens in ``consume``,
    a single bounded UPDATE executed inside the order-creation transaction, so
    two orders racing for the last use cannot both succeed.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Lookup & validation
    # ------------------------------------------------------------------ #

    def get_voucher(self, voucher_id: int) -> Optional[Voucher]:
        return self.db.query(Voucher).filter_by(voucherID=voucher_id).first()

    def find_by_code(self, code: Optional[str]) -> Optional[Voucher]:
        normalized = (code or "").strip().upper()
        if not normalized:
            return None
        return self.db.query(Voucher).filter(Voucher._code == normalized).first()

    def _rejection(
        self,
        voucher: Voucher,
        user_id: int,
        now: datetime,
    ) -> Optional[Tuple[VoucherRejection, str]]:
        if not voucher.is_active:
            return VoucherRejection.INACTIVE, "Voucher has been deactivated"
        if voucher.used_count >= voucher.quantity:
            return VoucherRejection.EXHAUSTED, "Voucher has no remaining uses"
        if now < voucher.start_date:
            return VoucherRejection.NOT_STARTED, "Voucher is not yet valid"
        if now > voucher.end_date:
            return VoucherRejection.EXPIRED, "Voucher has expired"
        if self.usage_count(voucher.voucherID, user_id) >= voucher.max_usage_per_user:
            return (
                VoucherRejection.USER_LIMIT_REACHED,
                f"You have already used this voucher {voucher.max_usage_per_user} time(s)",
            )
        return None

    def usage_count(self, voucher_id: int, user_id: int) -> int:
        return (
            self.db.query(func.count(VoucherUsage.usageID))
            .filter(VoucherUsage.voucherID == voucher_id, VoucherUsage.userID == user_id)
            .scalar()
        ) or 0

    def applicable_amount(self, voucher: Voucher, order_amount: int, order_items: Iterable[PricedLine]) -> int:
        """
        Discount base. Without category/brand filters or exclusions this is the
        whole order; otherwise only matching, non-excluded lines count.
        """
        excluded = {int(pid) for pid in (voucher.excluded_product_ids or [])}
        if not voucher.has_narrowing_filters() and not excluded:
            return order_amount

        categories = voucher.applicable_categories or []
        brands = voucher.applicable_brands or []
        amount = 0
        for line in order_items:
            if line.product_id in excluded:
                continue
            category_match = not categories or line.category in categories
            brand_match = not brands or line.brand in brands
            if category_match and brand_match:
                amount += line.amount
        return amount

    def validate_and_apply(
        self,
        code: str,
        user_id: int,
        order_amount: int,
        order_items: Iterable[PricedLine] = (),
        now: Optional[datetime] = None,
    ) -> VoucherQuote:
        """
        Check a code against an order and compute its discount.

        Checks run in a fixed order and the first failure is raised as
        VoucherInvalid carrying its distinct rejection reason.
        """
        now = to_naive_utc(now) or utcnow()
        voucher = self.find_by_code(code)
        if voucher is None:
            increment_counter("voucher_rejections_total", labels={"reason": VoucherRejection.NOT_FOUND.value})
            raise VoucherInvalid(VoucherRejection.NOT_FOUND, "Voucher code does not exist", code=(code or "").upper())

        rejection = self._rejection(voucher, user_id, now)
        if rejection is None and order_amount < voucher.min_order_amount:
            rejection = (
                VoucherRejection.MIN_ORDER_NOT_MET,
                f"Minimum order of {voucher.min_order_amount:,} is required to use this voucher",
            )

        applicable = order_amount
        if rejection is None:
            applicable = self.applicable_amount(voucher, order_amount, list(order_items))
            if applicable <= 0:
                rejection = (
                    VoucherRejection.NO_APPLICABLE_ITEMS,
                    "No items in the cart are eligible for this voucher",
                )

        if rejection is not None:
            reason, message = rejection
            increment_counter("voucher_rejections_total", labels={"reason": reason.value})
            raise VoucherInvalid(reason, message, code=voucher.code)

        discount = min(voucher.calculate_discount(applicable), order_amount)
        return VoucherQuote(
            voucher=voucher,
            discount_amount=discount,
            final_amount=order_amount - discount,
            applicable_amount=applicable,
        )

    # ------------------------------------------------------------------ #
    # Usage accounting
    # ------------------------------------------------------------------ #

    def consume(
        self,
        voucher: Voucher,
        user_id: int,
        order_id: Optional[int],
        discount_amount: int,
        now: Optional[datetime] = None,
    ) -> VoucherUsage:
        """
        Claim one use of the voucher for this user.

        Does not commit; the caller commits together with the order insert.
        Raises VoucherInvalid when another order claimed the last use first.
        """
        now = to_naive_utc(now) or utcnow()
        # Serialise claims on this voucher so the per-user count sees a committed rival claim
        self.db.query(Voucher.voucherID).filter(Voucher.voucherID == voucher.voucherID).with_for_update().one()
        user_usages = (
            select(func.count(VoucherUsage.usageID))
            .where(VoucherUsage.voucherID == voucher.voucherID, VoucherUsage.userID == user_id)
            .scalar_subquery()
        )
        stmt = (
            update(Voucher)
            .where(
                Voucher.voucherID == voucher.voucherID,
                Voucher.is_active.is_(True),
                Voucher.used_count < Voucher.quantity,
                Voucher.start_date <= now,
                Voucher.end_date >= now,
                user_usages < Voucher.max_usage_per_user,
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.refresh(voucher)
            rejection = self._rejection(voucher, user_id, now) or (
                VoucherRejection.EXHAUSTED,
                "Voucher has no remaining uses",
            )
            increment_counter("voucher_rejections_total", labels={"reason": rejection[0].value})
            raise VoucherInvalid(rejection[0], rejection[1], code=voucher.code)

        usage = VoucherUsage(
            voucherID=voucher.voucherID,
            userID=user_id,
            orderID=order_id,
            discount_amount=discount_amount,
            used_at=now,
        )
        self.db.add(usage)
        self.db.flush()

        increment_counter("voucher_redemptions_total")
        record_event(
            "voucher_consumed",
            {"voucher_id": voucher.voucherID, "user_id": user_id, "discount": discount_amount},
        )
        return usage

    # ------------------------------------------------------------------ #
    # Admin CRUD
    # ------------------------------------------------------------------ #

    def _validate_fields(self, data: Dict[str, Any]) -> Optional[str]:
        try:
            value = Decimal(str(data.get("discount_value")))
        except (InvalidOperation, TypeError, ValueError):
            return "Discount value is required"

        try:
            discount_type = DiscountType(data.get("discount_type"))
        except ValueError:
            return "Discount type must be 'percentage' or 'fixed'"

        if discount_type == DiscountType.PERCENTAGE and not (1 <= value <= 100):
            return "Percentage discount must be between 1 and 100"
        if discount_type == DiscountType.FIXED and value <= 0:
            return "Fixed discount must be greater than 0"

        start_date = to_naive_utc(data.get("start_date"))
        end_date = to_naive_utc(data.get("end_date"))
        if start_date is None or end_date is None:
            return "Start and end dates are required"
        if end_date <= start_date:
            return "End date must be after start date"

        if int(data.get("quantity") or 0) < 0:
            return "Quantity cannot be negative"
        if int(data.get("max_usage_per_user") or 1) < 1:
            return "Max usage per user must be at least 1"
        return None

    def _apply_fields(self, voucher: Voucher, data: Dict[str, Any]) -> None:
        for field in ("description", "min_order_amount", "max_discount_amount", "quantity", "max_usage_per_user"):
            if field in data:
                setattr(voucher, field, data[field])
        if "discount_type" in data:
            voucher.discount_type = DiscountType(data["discount_type"])
        if "discount_value" in data:
            voucher.discount_value = Decimal(str(data["discount_value"]))
        if "start_date" in data:
            voucher.start_date = to_naive_utc(data["start_date"])
        if "end_date" in data:
            voucher.end_date = to_naive_utc(data["end_date"])
        if "is_active" in data and data["is_active"] is not None:
            voucher.is_active = bool(data["is_active"])
        for field in ("applicable_categories", "applicable_brands"):
            if field in data:
                setattr(voucher, field, list(data[field] or []))
        if "excluded_product_ids" in data:
            voucher.excluded_product_ids = [int(pid) for pid in (data["excluded_product_ids"] or [])]

    def _unique_code(self, prefix: str = "", length: Optional[int] = None, attempts: int = 10) -> Optional[str]:
        length = length or Config.VOUCHER_CODE_LENGTH
        for _ in range(attempts):
            code = prefix + generate_code(max(1, length - len(prefix)))
            if self.find_by_code(code) is None:
                return code
        return None

    def create_voucher(
        self,
        data: Dict[str, Any],
        created_by: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Voucher]]:
        try:
            error = self._validate_fields(data)
            if error:
                return False, error, None

            if data.get("generate_code"):
                code = self._unique_code()
                if code is None:
                    return False, "Could not generate a unique voucher code", None
            else:
                code = (data.get("code") or "").strip().upper()
            if not CODE_PATTERN.match(code):
                return False, "Voucher code must be 6-12 uppercase letters or digits", None
            if self.find_by_code(code) is not None:
                return False, "Voucher code already exists", None

            voucher = Voucher(
                used_count=0,
                min_order_amount=0,
                max_usage_per_user=1,
                applicable_categories=[],
                applicable_brands=[],
                excluded_product_ids=[],
                createdByID=created_by,
            )
            voucher.code = code
            self._apply_fields(voucher, data)
            voucher.description = voucher.description or ""

            self.db.add(voucher)
            self.db.commit()
            self.db.refresh(voucher)
            self.logger.info("Created voucher %s (%s)", voucher.voucherID, voucher.code)
            return True, "Voucher created successfully", voucher

        except IntegrityError:
            self.db.rollback()
            return False, "Voucher code already exists", None
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Error creating voucher: {e}")
            return False, f"Error creating voucher: {str(e)}", None

    def update_voucher(self, voucher_id: int, updates: Dict[str, Any]) -> Tuple[bool, str, Optional[Voucher]]:
        try:
            voucher = self.get_voucher(voucher_id)
            if not voucher:
                return False, "Voucher not found", None

            new_code = updates.get("code")
            if new_code is not None and new_code.strip().upper() != voucher.code:
                if voucher.used_count > 0:
                    return False, "Cannot change the code of a voucher that has been used", None
                new_code = new_code.strip().upper()
                if not CODE_PATTERN.match(new_code):
                    return False, "Voucher code must be 6-12 uppercase letters or digits", None
                if self.find_by_code(new_code) is not None:
                    return False, "Voucher code already exists", None

            merged = {
                "discount_type": updates.get("discount_type", voucher.discount_type),
                "discount_value": updates.get("discount_value", voucher.discount_value),
                "start_date": updates.get("start_date", voucher.start_date),
                "end_date": updates.get("end_date", voucher.end_date),
                "quantity": updates.get("quantity", voucher.quantity),
                "max_usage_per_user": updates.get("max_usage_per_user", voucher.max_usage_per_user),
            }
            error = self._validate_fields(merged)
            if error:
                return False, error, None
            if int(merged["quantity"]) < voucher.used_count:
                return False, f"Quantity cannot be lower than the {voucher.used_count} uses already made", None

            if new_code is not None:
                voucher.code = new_code
            self._apply_fields(voucher, {k: v for k, v in updates.items() if k != "code"})

            self.db.commit()
            self.db.refresh(voucher)
            self.logger.info("Updated voucher %s", voucher_id)
            return True, "Voucher updated successfully", voucher

        except IntegrityError:
            self.db.rollback()
            return False, "Voucher code already exists", None
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Error updating voucher: {e}")
            return False, f"Error updating voucher: {str(e)}", None

    def delete_voucher(self, voucher_id: int) -> Tuple[bool, str]:
        try:
            voucher = self.get_voucher(voucher_id)
            if not voucher:
                return False, "Voucher not found"
            if voucher.used_count > 0:
                return False, "Cannot delete a voucher that has been used; deactivate it instead"

            self.db.delete(voucher)
            self.db.commit()
            self.logger.info("Deleted voucher %s", voucher_id)
            return True, "Voucher deleted successfully"

        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Error deleting voucher: {e}")
            return False, f"Error deleting voucher: {str(e)}"

    def toggle_voucher(self, voucher_id: int) -> Tuple[bool, str, Optional[Voucher]]:
        try:
            voucher = self.get_voucher(voucher_id)
            if not voucher:
                return False, "Voucher not found", None

            voucher.is_active = not voucher.is_active
            self.db.commit()
            state = "activated" if voucher.is_active else "deactivated"
            return True, f"Voucher {state} successfully", voucher

        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Error toggling voucher: {e}")
            return False, f"Error toggling voucher: {str(e)}", None

    def list_vouchers(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = to_naive_utc(now) or utcnow()
        query = self.db.query(Voucher)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Voucher._code.ilike(pattern), Voucher.description.ilike(pattern)))

        if status == "active":
            query = query.filter(
                Voucher.is_active.is_(True),
                Voucher.start_date <= now,
                Voucher.end_date >= now,
                Voucher.quantity > Voucher.used_count,
            )
        elif status == "expired":
            query = query.filter(Voucher.end_date < now)
        elif status == "used":
            query = query.filter(Voucher.used_count >= Voucher.quantity)

        page = max(1, page)
        total = query.count()
        vouchers = (
            query.order_by(Voucher.created_at.desc(), Voucher.voucherID.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return {
            "vouchers": vouchers,
            "total": total,
            "page": page,
            "pages": math.ceil(total / per_page) if per_page else 0,
        }

    def get_usage_statistics(self, voucher_id: int) -> Dict[str, Any]:
        voucher = self.get_voucher(voucher_id)
        if voucher is None:
            raise ResourceNotFound("Voucher", voucher_id)

        usages: List[VoucherUsage] = list(voucher.usages)
        total_discount = sum(usage.discount_amount or 0 for usage in usages)
        usage_by_date: Dict[str, int] = {}
        for usage in usages:
            day = usage.used_at.date().isoformat()
            usage_by_date[day] = usage_by_date.get(day, 0) + 1

        return {
            "total_used": voucher.used_count,
            "total_quantity": voucher.quantity,
            "remaining_quantity": voucher.remaining_quantity,
            "usage_rate": round(voucher.used_count / voucher.quantity * 100, 2) if voucher.quantity else 0.0,
            "total_discount_given": total_discount,
            "average_discount_per_use": total_discount // voucher.used_count if voucher.used_count else 0,
            "usage_by_date": usage_by_date,
            "recent_usage": [
                {
                    "user_id": usage.userID,
                    "order_id": usage.orderID,
                    "discount_amount": usage.discount_amount,
                    "used_at": usage.used_at,
                }
                for usage in reversed(usages[-10:])
            ],
        }

    def generate_bulk(
        self,
        count: int,
        voucher_data: Dict[str, Any],
        prefix: str = "",
        created_by: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create ``count`` vouchers sharing one template, each with a random code."""
        prefix = (prefix or "").strip().upper()
        created: List[Voucher] = []
        errors: List[str] = []

        if count <= 0 or count > Config.VOUCHER_BULK_MAX:
            errors.append(f"Count must be between 1 and {Config.VOUCHER_BULK_MAX}")
            return {"vouchers": created, "errors": errors}
        if len(prefix) >= Config.VOUCHER_CODE_LENGTH:
            errors.append("Prefix is too long")
            return {"vouchers": created, "errors": errors}

        for index in range(count):
            code = self._unique_code(prefix)
            if code is None:
                errors.append(f"Failed to generate unique code for voucher {index + 1}")
                continue
            template = dict(voucher_data)
            template.pop("generate_code", None)
            template["code"] = code
            ok, message, voucher = self.create_voucher(template, created_by=created_by)
            if ok:
                created.append(voucher)
            else:
                errors.append(f"Error creating voucher {code}: {message}")

        self.logger.info("Bulk generated %d voucher(s), %d error(s)", len(created), len(errors))
        return {"vouchers": created, "errors": errors}
