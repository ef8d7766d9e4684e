from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from fashion_shop.config import Config
from fashion_shop.errors import (
    FlashSaleExpired,
    FlashSaleSoldOut,
    InsufficientStock,
    InvalidRequest,
    InvalidStatusTransition,
    OrderCreationFailed,
    OrderNotCancellable,
    ResourceNotFound,
)
from fashion_shop.models import (
    CANCELLABLE_STATUSES,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    User,
    to_naive_utc,
    utcnow,
)
from fashion_shop.observability.metrics import increment_counter, observe_latency, record_event
from fashion_shop.services.cart_service import CartService
from fashion_shop.services.checkout_saga import CheckoutSaga, DebitStock, FinalizeOrder, ReserveFlashSale, SagaStep
from fashion_shop.services.customer_analytics_service import CustomerAnalyticsService
from fashion_shop.services.flash_sale_service import FlashSaleService
from fashion_shop.services.notification_service import describe_status_change, notify
from fashion_shop.services.stock_ledger import StockLedger
from fashion_shop.services.voucher_service import VoucherQuote, VoucherService

Notifier = Callable[..., None]

_OPEN_STATUSES = list(CANCELLABLE_STATUSES)


@dataclass(frozen=True)
class _FrozenLine:
    cart_item_id: int
    product_id: int
    product_name: str
    category: Optional[str]
    brand: Optional[str]
    size: str
    color: str
    quantity: int
    unit_price: int
    original_price: int
    discount_percentage: Optional[Decimal]
    flash_sale_id: Optional[int]

    @classmethod
    def from_cart_item(cls, item: CartItem) -> "_FrozenLine":
        is_flash = bool(item.is_flash_sale_item and item.flashSaleID)
        return cls(
            cart_item_id=item.cartItemID,
            product_id=item.productID,
            product_name=item.product.name,
            category=item.product.category,
            brand=item.product.brand,
            size=item.size,
            color=item.color,
            quantity=item.quantity,
            unit_price=item.price,
            original_price=(item.original_price or item.price) if is_flash else item.price,
            discount_percentage=item.discount_percentage if is_flash else None,
            flash_sale_id=item.flashSaleID if is_flash else None,
        )


@dataclass
class OrderPlacement:
    order: Order
    cart_changed: bool


class OrderService:
    """
    Order creation and the order state machine.

    Creation runs as a saga (stock debits and flash sale reservations commit
    one by one, the order row and voucher claim commit together). Closing an
    order, by cancellation or expiry, goes through a guarded status UPDATE so
    stock is credited back exactly once no matter how many callers race.
    """

    def __init__(
        self,
        db_session: Session,
        stock_ledger: Optional[StockLedger] = None,
        flash_sales: Optional[FlashSaleService] = None,
        vouchers: Optional[VoucherService] = None,
        carts: Optional[CartService] = None,
        analytics: Optional[CustomerAnalyticsService] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.db = db_session
        self.stock_ledger = stock_ledger or StockLedger(db_session)
        self.flash_sales = flash_sales or FlashSaleService(db_session, self.stock_ledger)
        self.vouchers = vouchers or VoucherService(db_session)
        self.carts = carts or CartService(db_session, self.flash_sales, self.stock_ledger)
        self.analytics = analytics or CustomerAnalyticsService(db_session)
        self.notifier = notifier or notify
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Lookups
    # ------------------------------------------------------------------ #

    def get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """Fetch an order; with ``user_id`` it must belong to that customer."""
        query = self.db.query(Order).filter(Order.orderID == order_id)
        if user_id is not None:
            query = query.filter(Order.userID == user_id)
        order = query.first()
        if order is None:
            raise ResourceNotFound("Order", order_id)
        return order

    def list_orders(
        self,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> Dict[str, Any]:
        query = self.db.query(Order)
        if user_id is not None:
            query = query.filter(Order.userID == user_id)
        if status:
            try:
                query = query.filter(Order.order_status == OrderStatus(status))
            except ValueError:
                raise InvalidRequest(f"Unknown order status: {status}")

        page = max(1, page)
        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.orderID.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return {
            "orders": orders,
            "total": total,
            "page": page,
            "pages": math.ceil(total / per_page) if per_page else 0,
        }

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def create_order(
        self,
        user_id: int,
        payment_method: str,
        shipping_address: Optional[Dict[str, Any]] = None,
        voucher_code: Optional[str] = None,
        selected_item_ids: Optional[Iterable[int]] = None,
        now: Optional[datetime] = None,
    ) -> OrderPlacement:
        """
        Turn the user's cart (or the selected lines of it) into an order.

        The cart is reconciled first, so the order is priced from live offers.
        Stock and flash sale shortfalls found up front raise directly; a debit
        that fails after earlier debits succeeded raises OrderCreationFailed
        once those debits have been credited back.
        """
        now = to_naive_utc(now) or utcnow()
        started = utcnow()
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise InvalidRequest(f"Unsupported payment method: {payment_method}")

        if self.db.query(User.userID).filter(User.userID == user_id).scalar() is None:
            raise ResourceNotFound("User", user_id)

        cart = self.carts.get_or_create_cart(user_id)
        cart, cart_changed = self.carts.reconcile(cart, now)

        items = list(cart.items)
        if selected_item_ids:
            try:
                wanted = {int(item_id) for item_id in selected_item_ids}
            except (TypeError, ValueError):
                raise InvalidRequest("selected_item_ids must be a list of integers", field="selected_item_ids")
            items = [item for item in items if item.cartItemID in wanted]
            if not items:
                raise InvalidRequest("No cart items were selected")
        if not items:
            raise InvalidRequest("Cart is empty")

        self._prevalidate(items, now)

        lines = [_FrozenLine.from_cart_item(item) for item in items]
        merchandise_total = sum(line.unit_price * line.quantity for line in lines)
        subtotal = sum(line.original_price * line.quantity for line in lines)

        quote: Optional[VoucherQuote] = None
        if voucher_code:
            quote = self.vouchers.validate_and_apply(
                voucher_code, user_id, merchandise_total, self.carts.priced_lines(items), now
            )

        reference = f"u{user_id}-{now:%Y%m%d%H%M%S%f}"
        steps: List[SagaStep] = []
        for line in lines:
            steps.append(DebitStock(reference, self.stock_ledger, line.product_id, line.size, line.color, line.quantity))
            if line.flash_sale_id:
                steps.append(
                    ReserveFlashSale(reference, self.flash_sales, line.flash_sale_id, line.product_id, line.quantity, now)
                )
        finalize = FinalizeOrder(
            reference,
            lambda: self._persist_order(user_id, method, shipping_address, lines, subtotal, quote, now),
        )
        steps.append(finalize)

        saga = CheckoutSaga(self.db, reference)
        try:
            saga.execute(steps)
        except (InsufficientStock, FlashSaleSoldOut, FlashSaleExpired) as exc:
            increment_counter("orders_failed_total", labels={"reason": exc.code})
            if saga.completed:
                raise OrderCreationFailed(
                    "Order could not be completed; reserved stock was released",
                    cause=exc,
                ) from exc
            raise

        order: Order = finalize.result  # type: ignore[assignment]
        elapsed_ms = (utcnow() - started).total_seconds() * 1000
        observe_latency("order_creation_latency_ms", elapsed_ms)
        increment_counter("orders_created_total", labels={"payment_method": method.value})
        record_event(
            "order_created",
            {"order_id": order.orderID, "user_id": user_id, "total": order.total_amount},
        )
        self.logger.info(
            "Order %d created for user %d",
            order.orderID,
            user_id,
            extra={"total_amount": order.total_amount, "items": len(lines), "cart_changed": cart_changed},
        )
        self._notify(user_id, "order_created", f"Order #{order.orderID} has been placed.", order.orderID)
        return OrderPlacement(order=order, cart_changed=cart_changed)

    def _prevalidate(self, items: List[CartItem], now: datetime) -> None:
        flash_demand: Dict[tuple, int] = defaultdict(int)
        for item in items:
            available = self.stock_ledger.get_available(item.productID, item.size, item.color)
            if available < item.quantity:
                raise InsufficientStock(
                    item.productID, item.size, item.color, item.quantity, available, item.product.name
                )
            if item.is_flash_sale_item and item.flashSaleID:
                flash_demand[(item.flashSaleID, item.productID)] += item.quantity

        for (sale_id, product_id), quantity in flash_demand.items():
            sale = self.flash_sales.get_flash_sale_by_id(sale_id)
            entry = sale.get_product_entry(product_id) if sale else None
            if sale is None or entry is None or not sale.is_currently_active(now) or not entry.is_active:
                raise FlashSaleExpired(sale_id, product_id)
            if quantity > entry.available_quantity:
                raise FlashSaleSoldOut(sale_id, product_id, quantity, entry.available_quantity)

    def _persist_order(
        self,
        user_id: int,
        method: PaymentMethod,
        shipping_address: Optional[Dict[str, Any]],
        lines: List[_FrozenLine],
        subtotal: int,
        quote: Optional[VoucherQuote],
        now: datetime,
    ) -> Order:
        merchandise_total = sum(line.unit_price * line.quantity for line in lines)
        voucher_discount = quote.discount_amount if quote else 0
        shipping_fee = Config.SHIPPING_FEE

        order = Order(
            userID=user_id,
            subtotal=subtotal,
            flash_sale_discount=subtotal - merchandise_total,
            voucher_discount=voucher_discount,
            voucherID=quote.voucher.voucherID if quote else None,
            voucher_code=quote.voucher.code if quote else None,
            shipping_fee=shipping_fee,
            total_amount=merchandise_total - voucher_discount + shipping_fee,
            shipping_address=shipping_address,
            payment_method=method,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.PENDING,
            flash_sale_ids=sorted({line.flash_sale_id for line in lines if line.flash_sale_id}),
            created_at=now,
            updated_at=now,
        )
        if method == PaymentMethod.BANK_TRANSFER:
            order.bank_transfer_expired_at = now + timedelta(hours=Config.BANK_TRANSFER_PAYMENT_HOURS)

        order.items = [
            OrderItem(
                productID=line.product_id,
                product_name=line.product_name,
                category=line.category,
                brand=line.brand,
                size=line.size,
                color=line.color,
                quantity=line.quantity,
                unit_price=line.unit_price,
                original_price=line.original_price,
                discount_percentage=line.discount_percentage,
                is_flash_sale_item=line.flash_sale_id is not None,
                flashSaleID=line.flash_sale_id,
                subtotal=line.unit_price * line.quantity,
            )
            for line in lines
        ]
        self.db.add(order)
        self.db.flush()

        if method == PaymentMethod.BANK_TRANSFER:
            order.bank_transfer_reference = f"FS{order.orderID:08d}"

        if quote is not None:
            self.vouchers.consume(quote.voucher, user_id, order.orderID, voucher_discount, now)

        for product_id in {line.product_id for line in lines}:
            self.db.execute(
                update(Product)
                .where(Product.productID == product_id)
                .values(total_orders=Product.total_orders + 1)
                .execution_options(synchronize_session=False)
            )

        cart = self.db.query(Cart).filter(Cart.userID == user_id).first()
        if cart is not None:
            self.carts.remove_items(cart, [line.cart_item_id for line in lines])

        self.db.commit()
        self.db.refresh(order)
        return order

    # ------------------------------------------------------------------ #
    # Payment
    # ------------------------------------------------------------------ #

    def confirm_payment(self, order_id: int, now: Optional[datetime] = None) -> Order:
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id)
        if not order.can_transition_payment(PaymentStatus.PAID) or not order.is_cancellable:
            raise InvalidStatusTransition(PaymentStatus(order.payment_status).value, PaymentStatus.PAID.value)

        result = self.db.execute(
            update(Order)
            .where(
                Order.orderID == order_id,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status.in_(_OPEN_STATUSES),
            )
            .values(payment_status=PaymentStatus.PAID, paid_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(order)
            raise InvalidStatusTransition(PaymentStatus(order.payment_status).value, PaymentStatus.PAID.value)
        self.db.commit()
        self.db.refresh(order)

        increment_counter("payments_confirmed_total", labels={"payment_method": PaymentMethod(order.payment_method).value})
        self._notify(order.userID, "payment_confirmed", f"Payment for order #{order_id} was received.", order_id)
        return order

    def mark_payment_failed(self, order_id: int, now: Optional[datetime] = None) -> Order:
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id)
        if not order.can_transition_payment(PaymentStatus.FAILED):
            raise InvalidStatusTransition(PaymentStatus(order.payment_status).value, PaymentStatus.FAILED.value)
        order.payment_status = PaymentStatus.FAILED
        order.updated_at = now
        self.db.commit()
        return order

    def get_payment_deadline_status(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id, user_id)
        status = order.payment_deadline_status(now)
        if status is None:
            return {"order_id": order_id, "applicable": False}

        remaining_hours = status["hours_remaining"] + status["minutes_remaining"] / 60
        return {
            "order_id": order_id,
            "applicable": True,
            "expired_at": order.bank_transfer_expired_at,
            "is_warning": not status["is_expired"] and remaining_hours < Config.PAYMENT_REMINDER_WINDOW_HOURS,
            **status,
        }

    def get_bank_transfer_info(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id, user_id)
        if not order.is_bank_transfer:
            raise InvalidRequest("Order is not paid by bank transfer", order_id=order_id)

        deadline = order.bank_transfer_expired_at
        if OrderStatus(order.order_status) == OrderStatus.EXPIRED or (deadline and deadline < now):
            raise InvalidRequest("Payment deadline has passed", order_id=order_id, expired=True)
        if PaymentStatus(order.payment_status) != PaymentStatus.PENDING:
            raise InvalidRequest("Order has no outstanding payment", order_id=order_id)

        return {
            "order_id": order_id,
            "bank_name": Config.BANK_NAME,
            "account_number": Config.BANK_ACCOUNT_NUMBER,
            "account_name": Config.BANK_ACCOUNT_NAME,
            "amount": order.total_amount,
            "transfer_content": order.bank_transfer_reference,
            "expired_at": deadline,
        }

    # ------------------------------------------------------------------ #
    # Status machine
    # ------------------------------------------------------------------ #

    def update_status(
        self,
        order_id: int,
        new_status: str,
        now: Optional[datetime] = None,
    ) -> Order:
        now = to_naive_utc(now) or utcnow()
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidRequest(f"Unknown order status: {new_status}")

        if target == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, reason="Cancelled by admin", now=now)

        order = self.get_order(order_id)
        current = OrderStatus(order.order_status)
        # Expiry belongs to the payment deadline sweep
        if target == OrderStatus.EXPIRED or not order.can_transition(target):
            raise InvalidStatusTransition(current.value, target.value)

        values: Dict[str, Any] = {"order_status": target, "updated_at": now}
        if target == OrderStatus.SHIPPED:
            values["shipped_at"] = now
        elif target == OrderStatus.DELIVERED:
            values["delivered_at"] = now
            if PaymentMethod(order.payment_method) == PaymentMethod.COD and order.can_transition_payment(PaymentStatus.PAID):
                values["payment_status"] = PaymentStatus.PAID
                values["paid_at"] = now

        result = self.db.execute(
            update(Order)
            .where(Order.orderID == order_id, Order.order_status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(order)
            raise InvalidStatusTransition(OrderStatus(order.order_status).value, target.value)
        self.db.commit()
        self.db.refresh(order)

        if target == OrderStatus.DELIVERED:
            self.analytics.recalculate(order.userID)

        increment_counter(
            "order_status_transitions_total",
            labels={"from_status": current.value, "to_status": target.value},
        )
        self._notify(
            order.userID,
            "order_status_changed",
            describe_status_change(order_id, current.value, target.value),
            order_id,
        )
        return order

    @staticmethod
    def refund_amount_for(order: Order) -> int:
        """Full refund before shipping, minus shipping once shipped, nothing after delivery."""
        status = OrderStatus(order.order_status)
        if status == OrderStatus.DELIVERED:
            return 0
        if status == OrderStatus.SHIPPED:
            return max(0, order.total_amount - (order.shipping_fee or 0))
        return order.total_amount

    def cancel_order(
        self,
        order_id: int,
        user_id: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Cancel an open order; ``user_id`` restricts it to the customer's own orders."""
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id, user_id)
        if not order.is_cancellable:
            raise OrderNotCancellable(order_id, OrderStatus(order.order_status).value)

        previous = OrderStatus(order.order_status)
        refund = self.refund_amount_for(order)
        values: Dict[str, Any] = {"refund_amount": 0}
        if PaymentStatus(order.payment_status) == PaymentStatus.PAID:
            values = {"payment_status": PaymentStatus.REFUNDED, "refund_amount": refund}

        if not self._close_order(order, OrderStatus.CANCELLED, reason or "Cancelled by customer", now, values):
            self.db.refresh(order)
            raise OrderNotCancellable(order_id, OrderStatus(order.order_status).value)

        increment_counter("orders_cancelled_total")
        self._notify(
            order.userID,
            "order_cancelled",
            describe_status_change(order_id, previous.value, OrderStatus.CANCELLED.value),
            order_id,
        )
        return order

    def refund_order(self, order_id: int, now: Optional[datetime] = None) -> Order:
        now = to_naive_utc(now) or utcnow()
        order = self.get_order(order_id)
        if not order.can_transition_payment(PaymentStatus.REFUNDED):
            raise InvalidStatusTransition(PaymentStatus(order.payment_status).value, PaymentStatus.REFUNDED.value)

        order.refund_amount = self.refund_amount_for(order)
        order.payment_status = PaymentStatus.REFUNDED
        order.updated_at = now
        self.db.commit()
        increment_counter("orders_refunded_total")
        self.logger.info("Order %d refunded %d", order_id, order.refund_amount)
        return order

    def _close_order(
        self,
        order: Order,
        status: OrderStatus,
        reason: str,
        now: datetime,
        values: Optional[Dict[str, Any]] = None,
        guards: Iterable[Any] = (),
    ) -> bool:
        """
        Move an open order to a terminal status, credit its lines back and
        take it out of the products' order counts.

        The conditional UPDATE is the lock: only the caller whose UPDATE matched
        an open row restores stock. Returns False when someone else got there first.
        """
        stmt = (
            update(Order)
            .where(Order.orderID == order.orderID, Order.order_status.in_(_OPEN_STATUSES), *guards)
            .values(
                order_status=status,
                cancellation_reason=reason,
                cancelled_at=now,
                stock_restored_at=now,
                updated_at=now,
                **(values or {}),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            return False

        for item in order.items:
            self.stock_ledger.credit(item.productID, item.size, item.color, item.quantity, reason=status.value, commit=False)
            if item.is_flash_sale_item and item.flashSaleID:
                self.flash_sales.release(item.flashSaleID, item.productID, item.quantity, commit=False)
        for product_id in {item.productID for item in order.items}:
            self.db.execute(
                update(Product)
                .where(Product.productID == product_id, Product.total_orders > 0)
                .values(total_orders=Product.total_orders - 1)
                .execution_options(synchronize_session=False)
            )

        self.db.commit()
        self.db.refresh(order)
        self.logger.info(
            "Order %d %s; stock restored for %d line(s)",
            order.orderID,
            status.value,
            len(order.items),
            extra={"reason": reason},
        )
        return True

    # ------------------------------------------------------------------ #
    # Sweeps
    # ------------------------------------------------------------------ #

    def expire_order(self, order_id: int, now: Optional[datetime] = None) -> bool:
        """Expire one overdue bank transfer order. Already closed orders are left alone."""
        now = to_naive_utc(now) or utcnow()
        order = self.db.query(Order).filter(Order.orderID == order_id).first()
        if order is None:
            return False

        expired = self._close_order(
            order,
            OrderStatus.EXPIRED,
            "Bank transfer payment deadline passed",
            now,
            values={"payment_status": PaymentStatus.FAILED},
            guards=(
                Order.payment_method == PaymentMethod.BANK_TRANSFER,
                Order.payment_status == PaymentStatus.PENDING,
                Order.bank_transfer_expired_at < now,
            ),
        )
        if expired:
            increment_counter("orders_expired_total")
            self._notify(
                order.userID,
                "order_expired",
                f"Order #{order_id} expired because payment was not received in time.",
                order_id,
            )
        return expired

    def expire_overdue_orders(self, now: Optional[datetime] = None) -> int:
        now = to_naive_utc(now) or utcnow()
        overdue = (
            self.db.query(Order.orderID)
            .filter(
                Order.payment_method == PaymentMethod.BANK_TRANSFER,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status.in_(_OPEN_STATUSES),
                Order.bank_transfer_expired_at < now,
            )
            .order_by(Order.orderID)
            .all()
        )

        expired = 0
        for (order_id,) in overdue:
            try:
                if self.expire_order(order_id, now):
                    expired += 1
            except Exception:
                self.db.rollback()
                self.logger.exception("Failed to expire order %s", order_id)
                increment_counter("order_expiry_failures_total")

        if overdue:
            self.logger.info("Expiry sweep: %d of %d overdue order(s) expired", expired, len(overdue))
        return expired

    def send_payment_reminders(self, now: Optional[datetime] = None) -> int:
        """Notify once per order when its bank transfer deadline is near."""
        now = to_naive_utc(now) or utcnow()
        window_end = now + timedelta(hours=Config.PAYMENT_REMINDER_WINDOW_HOURS)
        due = (
            self.db.query(Order.orderID, Order.userID, Order.bank_transfer_expired_at)
            .filter(
                Order.payment_method == PaymentMethod.BANK_TRANSFER,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status.in_(_OPEN_STATUSES),
                Order.reminder_sent_at.is_(None),
                Order.bank_transfer_expired_at > now,
                Order.bank_transfer_expired_at <= window_end,
            )
            .order_by(Order.orderID)
            .all()
        )

        sent = 0
        for order_id, user_id, deadline in due:
            try:
                result = self.db.execute(
                    update(Order)
                    .where(Order.orderID == order_id, Order.reminder_sent_at.is_(None))
                    .values(reminder_sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.db.rollback()
                    continue
                self.db.commit()
            except Exception:
                self.db.rollback()
                self.logger.exception("Failed to flag payment reminder for order %s", order_id)
                continue

            minutes_left = int((deadline - now).total_seconds() // 60)
            self._notify(
                user_id,
                "payment_reminder",
                f"Order #{order_id} must be paid within {minutes_left // 60}h {minutes_left % 60}m.",
                order_id,
            )
            sent += 1

        if sent:
            increment_counter("payment_reminders_sent_total", amount=sent)
        return sent

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def get_order_statistics(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in OrderStatus}
        for status, count in self.db.query(Order.order_status, func.count(Order.orderID)).group_by(Order.order_status):
            by_status[OrderStatus(status).value] = count

        delivered_revenue = (
            self.db.query(func.coalesce(func.sum(Order.total_amount), 0))
            .filter(Order.order_status == OrderStatus.DELIVERED)
            .scalar()
        )
        awaiting_payment = (
            self.db.query(func.count(Order.orderID))
            .filter(
                Order.payment_method == PaymentMethod.BANK_TRANSFER,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status.in_(_OPEN_STATUSES),
            )
            .scalar()
        )
        return {
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "total_revenue": int(delivered_revenue or 0),
            "awaiting_bank_transfer": int(awaiting_payment or 0),
        }

    def _notify(self, user_id: int, event: str, message: str, order_id: Optional[int] = None) -> None:
        try:
            self.notifier(user_id, event, message, order_id=order_id)
        except Exception:
            self.logger.exception("Notification %s for order %s failed", event, order_id)
            increment_counter("notification_failures_total", labels={"event": event})
