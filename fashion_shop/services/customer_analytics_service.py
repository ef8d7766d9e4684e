from __future__ import annotations

import logging
from collections import Counter
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from fashion_shop.errors import ResourceNotFound
from fashion_shop.models import Order, OrderStatus, User


class CustomerAnalyticsService:
    """Denormalised purchase analytics, derived only from delivered orders."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def recalculate(self, user_id: int, commit: bool = True) -> User:
        user = self.db.query(User).filter_by(userID=user_id).first()
        if user is None:
            raise ResourceNotFound("User", user_id)

        delivered = (
            self.db.query(Order)
            .filter(Order.userID == user_id, Order.order_status == OrderStatus.DELIVERED)
            .all()
        )

        total_spent = sum(order.total_amount for order in delivered)
        total_orders = len(delivered)
        categories: Counter = Counter()
        brands: Counter = Counter()
        for order in delivered:
            for item in order.items:
                if item.category:
                    categories[item.category] += item.quantity
                if item.brand:
                    brands[item.brand] += item.quantity

        user.total_spent = total_spent
        user.total_orders = total_orders
        user.average_order_value = (
            (Decimal(total_spent) / total_orders).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if total_orders
            else Decimal("0")
        )
        user.last_purchase_date = max(
            (order.delivered_at or order.created_at for order in delivered),
            default=None,
        )
        user.favorite_category = _most_common(categories)
        user.favorite_brand = _most_common(brands)

        if commit:
            self.db.commit()
        self.logger.info(
            "Customer analytics refreshed for user %d",
            user_id,
            extra={"total_spent": total_spent, "total_orders": total_orders},
        )
        return user

    def get_analytics(self, user_id: int) -> Dict[str, Any]:
        user = self.db.query(User).filter_by(userID=user_id).first()
        if user is None:
            raise ResourceNotFound("User", user_id)
        return {
            "user_id": user.userID,
            "total_spent": user.total_spent,
            "total_orders": user.total_orders,
            "average_order_value": float(user.average_order_value or 0),
            "last_purchase_date": user.last_purchase_date,
            "favorite_category": user.favorite_category,
            "favorite_brand": user.favorite_brand,
        }


def _most_common(counter: Counter) -> Optional[str]:
    if not counter:
        return None
    return counter.most_common(1)[0][0]
