import threading

import pytest

from fashion_shop.errors import InsufficientStock, ResourceNotFound
from fashion_shop.observability.metrics import get_counter_value, get_events
from fashion_shop.services.stock_ledger import StockLedger


def test_debit_then_credit_restores_quantity(db_session, make_product):
    product = make_product(stock={("M", "White"): 7})
    ledger = StockLedger(db_session)

    assert ledger.debit(product.productID, "M", "White", 3) == 4
    assert ledger.credit(product.productID, "M", "White", 3) == 7
    assert ledger.get_available(product.productID, "M", "White") == 7


def test_debit_rejects_without_partial_change(db_session, make_product):
    product = make_product(stock={("S", "Black"): 2})
    ledger = StockLedger(db_session)

    with pytest.raises(InsufficientStock) as excinfo:
        ledger.debit(product.productID, "S", "Black", 3)

    assert excinfo.value.details["available"] == 2
    assert excinfo.value.details["requested"] == 3
    assert "Linen Shirt" in excinfo.value.message
    assert ledger.get_available(product.productID, "S", "Black") == 2
    assert get_counter_value("stock_debit_rejections_total") == 1


def test_debit_unknown_variant_is_insufficient(db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    ledger = StockLedger(db_session)

    with pytest.raises(InsufficientStock):
        ledger.debit(product.productID, "XL", "White", 1)


def test_credit_recreates_missing_variant(db_session, make_product):
    product = make_product(stock={})
    ledger = StockLedger(db_session)

    assert ledger.credit(product.productID, "L", "Navy", 4) == 4
    assert ledger.total_stock(product.productID) == 4


def test_non_positive_quantities_are_rejected(db_session, make_product):
    product = make_product()
    ledger = StockLedger(db_session)

    with pytest.raises(ValueError):
        ledger.debit(product.productID, "M", "White", 0)
    with pytest.raises(ValueError):
        ledger.credit(product.productID, "M", "White", -1)


def test_size_and_color_are_normalized(db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    ledger = StockLedger(db_session)

    assert ledger.debit(product.productID, " M ", "White ", 1) == 4


def test_adjust_and_set_quantity(db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    ledger = StockLedger(db_session)

    assert ledger.adjust(product.productID, "M", "White", 2) == 7
    assert ledger.adjust(product.productID, "M", "White", -3) == 4
    assert ledger.set_quantity(product.productID, "M", "White", 12) == 12

    with pytest.raises(ValueError):
        ledger.set_quantity(product.productID, "M", "White", -1)
    with pytest.raises(ResourceNotFound):
        ledger.set_quantity(9999, "M", "White", 1)


def test_stock_changes_publish_inventory_events(db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    ledger = StockLedger(db_session)

    ledger.debit(product.productID, "M", "White", 2, reason="sale")

    events = get_events("inventory_updated")
    assert len(events) == 1
    payload = events[0]["payload"]
    assert payload["old_quantity"] == 5
    assert payload["new_quantity"] == 3
    assert payload["change"] == -2
    assert get_counter_value("inventory_updates_total", {"reason": "sale", "direction": "decrease"}) == 1


def test_concurrent_debits_never_oversell(session_factory, db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    product_id = product.productID
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def worker():
        session = session_factory()
        try:
            barrier.wait()
            StockLedger(session).debit(product_id, "M", "White", 3)
            result = "ok"
        except InsufficientStock:
            result = "insufficient"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    db_session.expire_all()
    assert StockLedger(db_session).get_available(product_id, "M", "White") == 2
