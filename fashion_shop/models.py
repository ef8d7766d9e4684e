# fashion_shop/models.py
from enum import Enum
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    CheckConstraint,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Single shared Base so every model lands in the same metadata.
from fashion_shop.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp. SQLite drops tzinfo, so all datetimes are stored naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def round_half_up(value: Any) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_amount(value: Any) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_FLOOR))


def compute_discount_price(original_price: Any, discount_percentage: Any) -> int:
    pct = Decimal(str(discount_percentage or 0))
    return round_half_up(Decimal(str(original_price)) * (1 - pct / Decimal(100)))


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "COD"
    BANK_TRANSFER = "BankTransfer"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(50), default='customer', nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Customer analytics, recomputed from delivered orders
    total_spent = Column(Integer, default=0, nullable=False)
    total_orders = Column(Integer, default=0, nullable=False)
    average_order_value = Column(Numeric(14, 2), default=0, nullable=False)
    last_purchase_date = Column(DateTime)
    favorite_category = Column(String(120))
    favorite_brand = Column(String(120))

    orders = relationship("Order", back_populates="user")
    cart = relationship("Cart", uselist=False, back_populates="user")

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Integer, nullable=False)
    category = Column(String(120), nullable=False)
    brand = Column(String(120))
    total_orders = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    variants = relationship(
        "StockVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="StockVariant.variantID",
    )

    def total_stock(self) -> int:
        return sum(max(0, variant.quantity or 0) for variant in self.variants)

    def get_variant(self, size: Optional[str], color: Optional[str]) -> Optional["StockVariant"]:
        for variant in self.variants:
            if variant.size == (size or "") and variant.color == (color or ""):
                return variant
        return None


class StockVariant(Base):
    __tablename__ = 'StockVariant'
    __table_args__ = (
        UniqueConstraint('productID', 'size', 'color', name='uq_stock_variant'),
        CheckConstraint('quantity >= 0', name='ck_stock_variant_quantity_non_negative'),
    )

    variantID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID', ondelete="CASCADE"), nullable=False)
    size = Column(String(20), nullable=False, default="")
    color = Column(String(50), nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")


class FlashSale(Base):
    __tablename__ = 'FlashSale'
    flashSaleID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)
    banner = Column(JSON)
    createdByID = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    products = relationship(
        "FlashSaleProduct",
        back_populates="flash_sale",
        cascade="all, delete-orphan",
        order_by="FlashSaleProduct.position",
    )

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        now = to_naive_utc(now) or utcnow()
        return bool(self.is_active) and self.start_date <= now <= self.end_date

    def time_remaining(self, now: Optional[datetime] = None) -> int:
        now = to_naive_utc(now) or utcnow()
        if self.end_date <= now:
            return 0
        return int((self.end_date - now).total_seconds())

    def status_label(self, now: Optional[datetime] = None) -> str:
        now = to_naive_utc(now) or utcnow()
        if self.end_date < now:
            return "ended"
        if not self.is_active:
            return "inactive"
        if self.start_date > now:
            return "upcoming"
        return "active"

    def get_product_entry(self, product_id: int) -> Optional["FlashSaleProduct"]:
        for entry in self.products:
            if entry.productID == product_id:
                return entry
        return None


class FlashSaleProduct(Base):
    __tablename__ = 'FlashSaleProduct'
    __table_args__ = (
        UniqueConstraint('flashSaleID', 'productID', name='uq_flash_sale_product'),
        CheckConstraint('sold_quantity >= 0', name='ck_flash_sale_sold_non_negative'),
        CheckConstraint('sold_quantity <= max_quantity', name='ck_flash_sale_sold_within_cap'),
    )

    flashSaleProductID = Column(Integer, primary_key=True, autoincrement=True)
    flashSaleID = Column(Integer, ForeignKey('FlashSale.flashSaleID', ondelete="CASCADE"), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    original_price = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)
    max_quantity = Column(Integer, nullable=False, default=100)
    sold_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    flash_sale = relationship("FlashSale", back_populates="products")
    product = relationship("Product")

    @property
    def discount_price(self) -> int:
        # Always derived; a stored copy could drift from the percentage
        return compute_discount_price(self.original_price, self.discount_percentage)

    @property
    def available_quantity(self) -> int:
        return max(0, (self.max_quantity or 0) - (self.sold_quantity or 0))

    def is_available(self) -> bool:
        return bool(self.is_active) and (self.sold_quantity or 0) < (self.max_quantity or 0)


class Voucher(Base):
    __tablename__ = 'Voucher'
    __table_args__ = (
        CheckConstraint('used_count >= 0', name='ck_voucher_used_non_negative'),
        CheckConstraint('used_count <= quantity', name='ck_voucher_used_within_quantity'),
    )

    voucherID = Column(Integer, primary_key=True, autoincrement=True)
    _code = Column('code', String(12), unique=True, nullable=False)
    description = Column(Text, nullable=False, default="")
    discount_type = Column(
        SAEnum(DiscountType, name="discount_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    discount_value = Column(Numeric(12, 2), nullable=False)
    min_order_amount = Column(Integer, nullable=False, default=0)
    max_discount_amount = Column(Integer)
    quantity = Column(Integer, nullable=False)
    used_count = Column(Integer, nullable=False, default=0)
    max_usage_per_user = Column(Integer, nullable=False, default=1)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    applicable_categories = Column(JSON, nullable=False, default=list)
    applicable_brands = Column(JSON, nullable=False, default=list)
    excluded_product_ids = Column(JSON, nullable=False, default=list)
    createdByID = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    usages = relationship(
        "VoucherUsage",
        back_populates="voucher",
        cascade="all, delete-orphan",
        order_by="VoucherUsage.usageID",
    )

    @property
    def code(self):
        return self._code

    @code.setter
    def code(self, value):
        self._code = (value or "").strip().upper()

    @property
    def remaining_quantity(self) -> int:
        return max(0, (self.quantity or 0) - (self.used_count or 0))

    def has_narrowing_filters(self) -> bool:
        return bool(self.applicable_categories) or bool(self.applicable_brands)

    def status_label(self, now: Optional[datetime] = None) -> str:
        now = to_naive_utc(now) or utcnow()
        if not self.is_active:
            return "inactive"
        if (self.used_count or 0) >= (self.quantity or 0):
            return "used_up"
        if now < self.start_date:
            return "not_started"
        if now > self.end_date:
            return "expired"
        return "active"

    def calculate_discount(self, base_amount: int) -> int:
        """Discount for the given base, floored to a whole currency unit."""
        base = Decimal(str(base_amount))
        value = Decimal(str(self.discount_value))
        if DiscountType(self.discount_type) == DiscountType.PERCENTAGE:
            discount = base * value / Decimal(100)
            if self.max_discount_amount and discount > self.max_discount_amount:
                discount = Decimal(self.max_discount_amount)
        else:
            discount = min(value, base)
        return max(0, floor_amount(discount))


class VoucherUsage(Base):
    __tablename__ = 'VoucherUsage'
    usageID = Column(Integer, primary_key=True, autoincrement=True)
    voucherID = Column(Integer, ForeignKey('Voucher.voucherID', ondelete="CASCADE"), nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    orderID = Column(Integer, ForeignKey('CustomerOrder.orderID'))
    discount_amount = Column(Integer, nullable=False, default=0)
    used_at = Column(DateTime, default=utcnow, nullable=False)

    voucher = relationship("Voucher", back_populates="usages")
    user = relationship("User")


class Cart(Base):
    __tablename__ = 'Cart'
    cartID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), unique=True, nullable=False)
    total_price = Column(Integer, nullable=False, default=0)
    total_discount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="cart")
    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.cartItemID",
    )

    def calculate_totals(self) -> None:
        """Recompute both totals from the current item snapshots."""
        total = 0
        discount = 0
        for item in self.items:
            total += item.subtotal
            discount += item.savings
        self.total_price = total
        self.total_discount = discount

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class CartItem(Base):
    __tablename__ = 'CartItem'
    __table_args__ = (
        CheckConstraint('quantity >= 1', name='ck_cart_item_quantity_positive'),
    )

    cartItemID = Column(Integer, primary_key=True, autoincrement=True)
    cartID = Column(Integer, ForeignKey('Cart.cartID', ondelete="CASCADE"), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String(20), nullable=False, default="")
    color = Column(String(50), nullable=False, default="")
    price = Column(Integer, nullable=False)

    is_flash_sale_item = Column(Boolean, nullable=False, default=False)
    flashSaleID = Column(Integer, ForeignKey('FlashSale.flashSaleID', ondelete="SET NULL"))
    original_price = Column(Integer)
    discount_percentage = Column(Numeric(5, 2))
    snapshot_sale_name = Column(String(255))
    snapshot_discount_price = Column(Integer)
    snapshot_end_date = Column(DateTime)
    snapshot_added_at = Column(DateTime)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")
    flash_sale = relationship("FlashSale")

    @property
    def subtotal(self) -> int:
        return (self.price or 0) * (self.quantity or 0)

    @property
    def savings(self) -> int:
        if self.is_flash_sale_item and self.original_price:
            return (self.original_price - self.price) * self.quantity
        return 0

    @property
    def flash_sale_snapshot(self) -> Optional[Dict[str, Any]]:
        if not self.is_flash_sale_item:
            return None
        return {
            "sale_name": self.snapshot_sale_name,
            "discount_price": self.snapshot_discount_price,
            "end_date": self.snapshot_end_date,
            "added_at": self.snapshot_added_at,
        }

    def apply_flash_offer(self, sale: FlashSale, entry: FlashSaleProduct, now: datetime) -> None:
        discount_price = entry.discount_price
        self.is_flash_sale_item = True
        self.flashSaleID = sale.flashSaleID
        self.price = discount_price
        self.original_price = entry.original_price
        self.discount_percentage = entry.discount_percentage
        self.snapshot_sale_name = sale.name
        self.snapshot_discount_price = discount_price
        self.snapshot_end_date = sale.end_date
        self.snapshot_added_at = self.snapshot_added_at or now

    def clear_flash_sale(self, regular_price: int) -> None:
        self.is_flash_sale_item = False
        self.flashSaleID = None
        self.price = regular_price
        self.original_price = None
        self.discount_percentage = None
        self.snapshot_sale_name = None
        self.snapshot_discount_price = None
        self.snapshot_end_date = None
        self.snapshot_added_at = None


class Order(Base):
    __tablename__ = 'CustomerOrder'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    subtotal = Column(Integer, nullable=False)
    flash_sale_discount = Column(Integer, nullable=False, default=0)
    voucher_discount = Column(Integer, nullable=False, default=0)
    voucherID = Column(Integer, ForeignKey('Voucher.voucherID', ondelete="SET NULL"))
    voucher_code = Column(String(12))
    shipping_fee = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    shipping_address = Column(JSON)
    payment_method = Column(
        SAEnum(PaymentMethod, name="payment_method", native_enum=False, validate_strings=True),
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    order_status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    bank_transfer_reference = Column(String(40))
    bank_transfer_expired_at = Column(DateTime)
    reminder_sent_at = Column(DateTime)
    flash_sale_ids = Column(JSON, nullable=False, default=list)
    cancellation_reason = Column(String(255))
    cancelled_at = Column(DateTime)
    refund_amount = Column(Integer)
    stock_restored_at = Column(DateTime)
    paid_at = Column(DateTime)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.orderItemID",
    )

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.EXPIRED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.EXPIRED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    _VALID_PAYMENT_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
        PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.order_status), set())
        return OrderStatus(new_status) in allowed

    def can_transition_payment(self, new_status: PaymentStatus) -> bool:
        allowed = self._VALID_PAYMENT_TRANSITIONS.get(PaymentStatus(self.payment_status), set())
        return PaymentStatus(new_status) in allowed

    @property
    def is_cancellable(self) -> bool:
        return OrderStatus(self.order_status) in CANCELLABLE_STATUSES

    @property
    def is_bank_transfer(self) -> bool:
        return PaymentMethod(self.payment_method) == PaymentMethod.BANK_TRANSFER

    def payment_deadline_status(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        if not self.is_bank_transfer or not self.bank_transfer_expired_at:
            return None
        if PaymentStatus(self.payment_status) != PaymentStatus.PENDING:
            return None
        now = to_naive_utc(now) or utcnow()
        remaining = self.bank_transfer_expired_at - now
        if remaining <= timedelta(0):
            return {"is_expired": True, "hours_remaining": 0, "minutes_remaining": 0}
        total_minutes = int(remaining.total_seconds() // 60)
        return {
            "is_expired": False,
            "hours_remaining": total_minutes // 60,
            "minutes_remaining": total_minutes % 60,
        }


class OrderItem(Base):
    __tablename__ = 'OrderItem'

    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('CustomerOrder.orderID', ondelete="CASCADE"), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    product_name = Column(String(255), nullable=False)
    category = Column(String(120))
    brand = Column(String(120))
    size = Column(String(20), nullable=False, default="")
    color = Column(String(50), nullable=False, default="")
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    original_price = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2))
    is_flash_sale_item = Column(Boolean, nullable=False, default=False)
    # Plain id, not a foreign key: frozen orders outlive deleted sales
    flashSaleID = Column(Integer)
    subtotal = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
