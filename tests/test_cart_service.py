from datetime import timedelta
from decimal import Decimal

import pytest

from fashion_shop.config import Config
from fashion_shop.errors import FlashSaleSoldOut, InsufficientStock, InvalidRequest, ResourceNotFound
from fashion_shop.observability.metrics import get_counter_value
from fashion_shop.services.cart_service import CartService
from fashion_shop.services.stock_ledger import StockLedger


def test_ended_sale_demotes_item_to_regular_price(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000)
    make_flash_sale([(product, 20, 10)], end=now + timedelta(hours=1))
    service = CartService(db_session)

    cart = service.add_item(customer.userID, product.productID, 2, "M", "White", now=now)
    item = cart.items[0]
    assert item.is_flash_sale_item
    assert item.price == 80_000
    assert cart.total_price == 160_000
    assert cart.total_discount == 40_000

    cart, changed = service.get_cart(customer.userID, now=now + timedelta(hours=2))

    assert changed is True
    item = cart.items[0]
    assert item.is_flash_sale_item is False
    assert item.price == 100_000
    assert item.flashSaleID is None
    assert item.original_price is None
    assert item.flash_sale_snapshot is None
    assert cart.total_price == 200_000
    assert cart.total_discount == 0
    assert get_counter_value("cart_items_demoted_total") == 1


def test_reconcile_reprices_when_discount_moves(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000)
    sale = make_flash_sale([(product, 20, 10)])
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 1, "M", "White", now=now)

    sale.products[0].discount_percentage = Decimal("30")
    db_session.commit()

    cart, changed = service.get_cart(customer.userID, now=now)
    assert changed is True
    assert cart.items[0].price == 70_000
    assert cart.total_discount == 30_000

    _, changed = service.get_cart(customer.userID, now=now)
    assert changed is False


def test_reconcile_switches_to_higher_priority_sale(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000)
    make_flash_sale([(product, 10, 10)], name="Everyday", priority=1)
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 1, "M", "White", now=now)

    better = make_flash_sale([(product, 40, 10)], name="Midnight", priority=9)
    cart, changed = service.get_cart(customer.userID, now=now)

    assert changed is True
    assert cart.items[0].flashSaleID == better.flashSaleID
    assert cart.items[0].price == 60_000
    assert cart.items[0].snapshot_sale_name == "Midnight"


def test_regular_items_follow_catalog_price(db_session, customer, make_product, now):
    product = make_product(price=300_000)
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 1, "M", "White", now=now)

    product.price = 280_000
    db_session.commit()

    cart, changed = service.get_cart(customer.userID, now=now)
    assert changed is True
    assert cart.total_price == 280_000


def test_add_item_merges_same_variant(db_session, customer, make_product, now):
    product = make_product(stock={("M", "White"): 10, ("L", "White"): 10})
    service = CartService(db_session)

    service.add_item(customer.userID, product.productID, 2, "M", "White", now=now)
    service.add_item(customer.userID, product.productID, 3, "M", "White", now=now)
    cart = service.add_item(customer.userID, product.productID, 1, "L", "White", now=now)

    assert len(cart.items) == 2
    assert [i.quantity for i in cart.items] == [5, 1]
    assert cart.item_count == 6
    assert cart.total_price == 6 * 500_000


def test_add_item_checks_stock_including_existing_quantity(db_session, customer, make_product, now):
    product = make_product(stock={("M", "White"): 4})
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 3, "M", "White", now=now)

    with pytest.raises(InsufficientStock) as excinfo:
        service.add_item(customer.userID, product.productID, 2, "M", "White", now=now)
    assert excinfo.value.details["requested"] == 5
    assert excinfo.value.details["available"] == 4


def test_add_item_respects_flash_sale_cap(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 20})
    make_flash_sale([(product, 25, 5, 2)])

    with pytest.raises(FlashSaleSoldOut):
        CartService(db_session).add_item(customer.userID, product.productID, 4, "M", "White", now=now)


def test_add_item_rejects_bad_input(db_session, customer, make_product, now):
    product = make_product()
    service = CartService(db_session)

    with pytest.raises(InvalidRequest):
        service.add_item(customer.userID, product.productID, 0, "M", "White", now=now)
    with pytest.raises(ResourceNotFound):
        service.add_item(customer.userID, 9999, 1, "M", "White", now=now)


def test_update_and_remove_items(db_session, customer, make_product, now):
    product = make_product(stock={("M", "White"): 6})
    service = CartService(db_session)
    cart = service.add_item(customer.userID, product.productID, 1, "M", "White", now=now)
    item_id = cart.items[0].cartItemID

    cart = service.update_item_quantity(customer.userID, item_id, 4, now=now)
    assert cart.items[0].quantity == 4
    assert cart.total_price == 2_000_000

    with pytest.raises(InsufficientStock):
        service.update_item_quantity(customer.userID, item_id, 7, now=now)
    with pytest.raises(InvalidRequest):
        service.update_item_quantity(customer.userID, item_id, 0, now=now)
    with pytest.raises(ResourceNotFound):
        service.update_item_quantity(customer.userID, 9999, 1, now=now)

    cart = service.remove_item(customer.userID, item_id)
    assert cart.items == []
    assert cart.total_price == 0


def test_clear_empties_cart(db_session, customer, make_product, now):
    product = make_product()
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 2, "M", "White", now=now)

    cart = service.clear(customer.userID)

    assert cart.items == []
    assert cart.total_price == 0
    assert cart.total_discount == 0


def test_check_availability_clamps_and_drops(db_session, customer, make_product, now):
    shirt = make_product(name="Linen Shirt", stock={("M", "White"): 5})
    scarf = make_product(name="Silk Scarf", price=150_000, stock={("OS", "Red"): 2})
    service = CartService(db_session)
    service.add_item(customer.userID, shirt.productID, 5, "M", "White", now=now)
    service.add_item(customer.userID, scarf.productID, 2, "OS", "Red", now=now)

    ledger = StockLedger(db_session)
    ledger.set_quantity(shirt.productID, "M", "White", 2)
    ledger.set_quantity(scarf.productID, "OS", "Red", 0)

    result = service.check_availability(customer.userID, now=now)

    assert result["available"] is False
    assert [u["product"] for u in result["unavailable_items"]] == ["Silk Scarf"]
    assert result["updated_items"][0]["available"] == 2
    assert result["updated_items"][0]["requested"] == 5
    cart = result["cart"]
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 2
    assert cart.total_price == 1_000_000


def test_check_availability_clamps_to_flash_sale_remainder(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000, stock={("M", "White"): 20})
    sale = make_flash_sale([(product, 50, 6)])
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 4, "M", "White", now=now)

    # Someone else bought most of the allocation; the entry stays eligible
    sale.products[0].sold_quantity = 5
    db_session.commit()

    result = service.check_availability(customer.userID, now=now)

    limits = [u for u in result["updated_items"] if u.get("reason") == "Flash sale limit"]
    assert limits and limits[0]["available"] == 1
    assert result["cart"].items[0].quantity == 1


def test_summary_requires_items(db_session, customer):
    with pytest.raises(InvalidRequest):
        CartService(db_session).get_summary(customer.userID)


def test_summary_totals(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000)
    make_flash_sale([(product, 20, 10)])
    service = CartService(db_session)
    service.add_item(customer.userID, product.productID, 3, "M", "White", now=now)

    summary = service.get_summary(customer.userID, now=now)

    assert summary["subtotal"] == 240_000
    assert summary["flash_sale_discount"] == 60_000
    assert summary["shipping"] == Config.SHIPPING_FEE
    assert summary["total"] == 240_000 + Config.SHIPPING_FEE
    assert summary["items"][0]["is_flash_sale"] is True
    assert summary["items"][0]["flash_sale_info"]["sale_name"] == "Summer Flash"
    assert summary["cart_changed"] is False


def test_priced_lines_use_current_item_prices(db_session, customer, make_product, make_flash_sale, now):
    product = make_product(price=100_000, category="Dresses", brand="Atelier")
    make_flash_sale([(product, 10, 10)])
    cart = CartService(db_session).add_item(customer.userID, product.productID, 2, "M", "White", now=now)

    (line,) = CartService.priced_lines(cart.items)

    assert line.category == "Dresses"
    assert line.brand == "Atelier"
    assert line.unit_price == 90_000
    assert line.quantity == 2
