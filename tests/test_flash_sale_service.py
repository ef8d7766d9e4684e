import threading
from datetime import timedelta

import pytest

from fashion_shop.errors import FlashSaleExpired, FlashSaleSoldOut, ResourceNotFound
from fashion_shop.models import FlashSaleProduct
from fashion_shop.services.flash_sale_service import FlashSaleService


def _sold(session, sale_id, product_id):
    session.expire_all()
    return session.query(FlashSaleProduct).filter_by(flashSaleID=sale_id, productID=product_id).one().sold_quantity


def test_reserve_respects_cap(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 50})
    sale = make_flash_sale([(product, 20, 10, 8)])
    service = FlashSaleService(db_session)

    with pytest.raises(FlashSaleSoldOut) as excinfo:
        service.reserve(sale.flashSaleID, product.productID, 3, now=now)
    assert excinfo.value.message == "Flash sale limit: only 2 items available"
    assert _sold(db_session, sale.flashSaleID, product.productID) == 8

    assert service.reserve(sale.flashSaleID, product.productID, 2, now=now) == 10


def test_reserve_outside_window_is_expired(db_session, make_product, make_flash_sale, now):
    product = make_product()
    sale = make_flash_sale([(product, 20, 10)], start=now - timedelta(hours=3), end=now - timedelta(hours=1))

    with pytest.raises(FlashSaleExpired):
        FlashSaleService(db_session).reserve(sale.flashSaleID, product.productID, 1, now=now)


def test_reserve_unknown_sale_or_product(db_session, make_product, make_flash_sale, now):
    product = make_product()
    other = make_product(name="Denim Jacket")
    sale = make_flash_sale([(product, 20, 10)])
    service = FlashSaleService(db_session)

    with pytest.raises(ResourceNotFound):
        service.reserve(9999, product.productID, 1, now=now)
    with pytest.raises(ResourceNotFound):
        service.reserve(sale.flashSaleID, other.productID, 1, now=now)


def test_release_floors_at_zero(db_session, make_product, make_flash_sale):
    product = make_product()
    sale = make_flash_sale([(product, 20, 10, 2)])
    service = FlashSaleService(db_session)

    assert service.release(sale.flashSaleID, product.productID, 5) == 0
    assert service.release(9999, product.productID, 1) == 0


def test_concurrent_reservations_never_exceed_cap(session_factory, db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 50})
    sale = make_flash_sale([(product, 30, 5)])
    sale_id, product_id = sale.flashSaleID, product.productID
    barrier = threading.Barrier(4)
    successes = []
    lock = threading.Lock()

    def worker():
        session = session_factory()
        try:
            barrier.wait()
            FlashSaleService(session).reserve(sale_id, product_id, 2, now=now)
            with lock:
                successes.append(1)
        except FlashSaleSoldOut:
            pass
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 2
    assert _sold(db_session, sale_id, product_id) == 4


def test_eligible_offer_prefers_higher_priority(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 100})
    make_flash_sale([(product, 10, 5)], name="Low", priority=1)
    high = make_flash_sale([(product, 30, 5)], name="High", priority=5)
    service = FlashSaleService(db_session)

    sale, entry = service.find_eligible_offer(product.productID, now)
    assert sale.flashSaleID == high.flashSaleID
    assert entry.discount_price == 350_000


def test_eligible_offer_skips_sold_out_entry(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 100})
    make_flash_sale([(product, 30, 5, 5)], name="Gone", priority=5)
    fallback = make_flash_sale([(product, 10, 5)], name="Still on", priority=1)

    sale, _ = FlashSaleService(db_session).find_eligible_offer(product.productID, now)
    assert sale.flashSaleID == fallback.flashSaleID


def test_active_and_upcoming_listing(db_session, make_product, make_flash_sale, now):
    product = make_product()
    active = make_flash_sale([(product, 10, 1)], name="Now")
    upcoming = make_flash_sale([(product, 10, 1)], name="Later", start=now + timedelta(days=1), end=now + timedelta(days=2))
    make_flash_sale([(product, 10, 1)], name="Off", is_active=False)
    service = FlashSaleService(db_session)

    assert [s.flashSaleID for s in service.get_active_sales(now)] == [active.flashSaleID]
    assert [s.flashSaleID for s in service.get_upcoming_sales(now)] == [upcoming.flashSaleID]


def test_caps_are_exclusive_across_running_sales(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 6, ("L", "White"): 4})
    make_flash_sale([(product, 20, 7, 3)])
    service = FlashSaleService(db_session)

    # 10 in stock, 4 still promised to the running sale
    assert service.available_for_flash_sale(product.productID, now=now) == 6

    ok, message, _ = service.create_flash_sale(
        "Greedy", now, now + timedelta(hours=1), [{"product_id": product.productID, "discount_percentage": 10, "max_quantity": 7}], now=now
    )
    assert not ok
    assert "exceeds available stock (6)" in message

    ok, _, sale = service.create_flash_sale(
        "Fits", now, now + timedelta(hours=1), [{"product_id": product.productID, "discount_percentage": 10, "max_quantity": 6}], now=now
    )
    assert ok
    assert service.available_for_flash_sale(product.productID, now=now) == 0
    assert service.available_for_flash_sale(product.productID, exclude_sale_id=sale.flashSaleID, now=now) == 6


def test_ended_sales_release_their_allocation(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 10})
    make_flash_sale([(product, 20, 10)], start=now - timedelta(days=2), end=now - timedelta(days=1))

    assert FlashSaleService(db_session).available_for_flash_sale(product.productID, now=now) == 10


def test_create_flash_sale_validation(db_session, make_product, now):
    product = make_product(stock={("M", "White"): 10})
    service = FlashSaleService(db_session)
    entry = {"product_id": product.productID, "discount_percentage": 20, "max_quantity": 5}

    assert service.create_flash_sale("", now, now + timedelta(hours=1), [entry])[1] == "Name is required"
    assert service.create_flash_sale("X", now, now, [entry])[1] == "End date must be after start date"
    assert service.create_flash_sale("X", now, now + timedelta(hours=1), [])[1] == "No valid products for flash sale"

    bad_discount = dict(entry, discount_percentage=0)
    ok, message, _ = service.create_flash_sale("X", now, now + timedelta(hours=1), [bad_discount], now=now)
    assert not ok and "discount must be between 0 and 100" in message


def test_create_flash_sale_snapshots_price(db_session, make_product, now):
    product = make_product(price=199_999, stock={("M", "White"): 10})
    service = FlashSaleService(db_session)

    ok, message, sale = service.create_flash_sale(
        "Weekend",
        now,
        now + timedelta(hours=6),
        [{"product_id": product.productID, "discount_percentage": "33.33", "max_quantity": 4}],
        now=now,
    )

    assert ok, message
    entry = sale.products[0]
    assert entry.original_price == 199_999
    # 199999 * 0.6667 = 133339.33 -> half-up
    assert entry.discount_price == 133_339
    assert entry.sold_quantity == 0


def test_update_preserves_sold_quantity(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 20})
    sale = make_flash_sale([(product, 20, 10, 4)])
    service = FlashSaleService(db_session)

    ok, _, _ = service.update_flash_sale(
        sale.flashSaleID,
        {"products": [{"product_id": product.productID, "discount_percentage": 25, "max_quantity": 3}]},
        now=now,
    )
    assert not ok

    ok, message, updated = service.update_flash_sale(
        sale.flashSaleID,
        {"name": "Renamed", "products": [{"product_id": product.productID, "discount_percentage": 25, "max_quantity": 12}]},
        now=now,
    )
    assert ok, message
    assert updated.name == "Renamed"
    assert updated.products[0].sold_quantity == 4
    assert updated.products[0].max_quantity == 12


def test_delete_refused_for_active_sale_with_sales(db_session, make_product, make_flash_sale, now):
    product = make_product()
    busy = make_flash_sale([(product, 20, 5, 1)])
    idle = make_flash_sale([(product, 20, 5)], name="Idle")
    service = FlashSaleService(db_session)

    assert service.delete_flash_sale(busy.flashSaleID, now=now) == (False, "Cannot delete active flash sale with sold items")
    assert service.delete_flash_sale(idle.flashSaleID, now=now)[0] is True
    assert service.get_flash_sale_by_id(idle.flashSaleID) is None


def test_toggle_flash_sale(db_session, make_product, make_flash_sale):
    product = make_product()
    sale = make_flash_sale([(product, 20, 5)])

    ok, message, toggled = FlashSaleService(db_session).toggle_flash_sale(sale.flashSaleID)
    assert ok and message == "Flash sale deactivated"
    assert toggled.is_active is False


def test_statistics(db_session, make_product, make_flash_sale, now):
    product = make_product(price=100_000, stock={("M", "White"): 30})
    sale = make_flash_sale([(product, 50, 10, 4)])

    stats = FlashSaleService(db_session).get_statistics(sale.flashSaleID, now=now)

    assert stats["overall"]["total_sold"] == 4
    assert stats["overall"]["total_revenue"] == 200_000
    assert stats["overall"]["average_discount"] == 50.0
    assert stats["products"][0]["sell_through_rate"] == 40.0
    assert stats["is_currently_active"] is True
    assert stats["time_remaining"] == 2 * 3600


def test_list_flash_sales_by_status(db_session, make_product, make_flash_sale, now):
    product = make_product()
    make_flash_sale([(product, 20, 1)], name="Running")
    make_flash_sale([(product, 20, 1)], name="Done", start=now - timedelta(days=3), end=now - timedelta(days=2))
    service = FlashSaleService(db_session)

    result = service.list_flash_sales(status="ended", now=now)
    assert [s.name for s in result["flash_sales"]] == ["Done"]
    assert result["pagination"]["total"] == 1
    assert service.list_flash_sales(now=now)["pagination"]["total"] == 2


def test_check_stock(db_session, make_product, make_flash_sale, now):
    product = make_product(stock={("M", "White"): 5, ("L", "Black"): 5})
    make_flash_sale([(product, 20, 4)])

    result = FlashSaleService(db_session).check_stock(product.productID, requested_quantity=7, now=now)

    assert result["total_stock"] == 10
    assert result["available_for_flash_sale"] == 6
    assert result["can_add_to_flash_sale"] is False
    assert len(result["stock"]) == 2
