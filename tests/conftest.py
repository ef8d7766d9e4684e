# tests/conftest.py
"""
Pytest configuration and shared fixtures.

Each test gets its own SQLite file so threaded tests can open independent
connections against the same database.
"""

import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

# Settle configuration before anything imports fashion_shop.config
_TEST_DB_DIR = tempfile.mkdtemp(prefix="fashion_shop_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR}/app.db"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fashion_shop.database import Base
from fashion_shop.models import (
    DiscountType,
    FlashSale,
    FlashSaleProduct,
    Product,
    StockVariant,
    User,
    Voucher,
)
from fashion_shop.observability.metrics import reset_metrics
from fashion_shop.services.notification_service import NotificationService

NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{(tmp_path / 'shop.db').as_posix()}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh database session for each test"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_in_process_state():
    reset_metrics()
    NotificationService().reset()
    yield
    NotificationService().reset()


def _make_user(session, username, role="customer"):
    user = User(username=username, email=f"{username}@example.com", role=role)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def customer(db_session):
    return _make_user(db_session, "test_customer")


@pytest.fixture
def other_customer(db_session):
    return _make_user(db_session, "test_other_customer")


@pytest.fixture
def admin_user(db_session):
    return _make_user(db_session, "test_admin", role="admin")


@pytest.fixture
def make_product(db_session):
    """Factory: ``stock`` maps (size, color) to quantity."""

    def _make(name="Linen Shirt", price=500_000, category="Shirts", brand="Maison", stock=None):
        product = Product(name=name, price=price, category=category, brand=brand, description="")
        for (size, color), quantity in (stock if stock is not None else {("M", "White"): 10}).items():
            product.variants.append(StockVariant(size=size, color=color, quantity=quantity))
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_flash_sale(db_session):
    """Factory: ``entries`` is a list of (product, discount_percentage, max_quantity[, sold])."""

    def _make(entries, start=None, end=None, name="Summer Flash", priority=0, is_active=True):
        sale = FlashSale(
            name=name,
            description="",
            start_date=start or NOW - timedelta(hours=1),
            end_date=end or NOW + timedelta(hours=2),
            is_active=is_active,
            priority=priority,
            created_at=NOW,
        )
        for position, entry in enumerate(entries):
            product, pct, max_quantity = entry[:3]
            sold = entry[3] if len(entry) > 3 else 0
            sale.products.append(
                FlashSaleProduct(
                    productID=product.productID,
                    position=position,
                    original_price=product.price,
                    discount_percentage=Decimal(str(pct)),
                    max_quantity=max_quantity,
                    sold_quantity=sold,
                    is_active=True,
                )
            )
        db_session.add(sale)
        db_session.commit()
        return sale

    return _make


@pytest.fixture
def make_voucher(db_session):
    def _make(code="SUMMER20", discount_type=DiscountType.PERCENTAGE, discount_value=20, **overrides):
        fields = {
            "description": "",
            "discount_type": discount_type,
            "discount_value": Decimal(str(discount_value)),
            "min_order_amount": 0,
            "max_discount_amount": None,
            "quantity": 100,
            "used_count": 0,
            "max_usage_per_user": 1,
            "start_date": NOW - timedelta(days=1),
            "end_date": NOW + timedelta(days=7),
            "is_active": True,
            "applicable_categories": [],
            "applicable_brands": [],
            "excluded_product_ids": [],
        }
        fields.update(overrides)
        voucher = Voucher(**fields)
        voucher.code = code
        db_session.add(voucher)
        db_session.commit()
        return voucher

    return _make
