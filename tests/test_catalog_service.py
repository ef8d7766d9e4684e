import pytest

from fashion_shop.errors import InsufficientStock, ResourceNotFound
from fashion_shop.services.catalog_service import CatalogService


def test_create_product_with_variants(db_session):
    service = CatalogService(db_session)

    ok, message, product = service.create_product(
        " Pleated Skirt ",
        350_000,
        "Skirts",
        brand="Atelier",
        stock=[{"size": "S", "color": "Navy", "quantity": 4}, {"size": "M", "color": "Navy", "quantity": 6}],
    )

    assert ok, message
    assert product.name == "Pleated Skirt"
    assert sorted(v.quantity for v in product.variants) == [4, 6]
    assert service.get_product(product.productID) is product


def test_create_product_validation(db_session):
    service = CatalogService(db_session)

    assert service.create_product("", 1_000, "Tops") == (False, "Name is required", None)
    assert service.create_product("Tee", -1, "Tops")[1] == "Price must be zero or positive"
    assert service.create_product("Tee", 1_000, "")[1] == "Category is required"
    assert service.create_product("Tee", 1_000, "Tops", stock=[{"size": "M", "color": "Red", "quantity": -2}])[1] == (
        "Stock quantity cannot be negative"
    )
    assert service.list_products() == []


def test_update_stock_delta_and_overwrite(db_session, make_product):
    product = make_product(stock={("M", "White"): 5})
    service = CatalogService(db_session)

    assert service.update_stock(product.productID, "M", "White", delta=3) == 8
    assert service.update_stock(product.productID, "M", "White", quantity=2) == 2
    assert service.update_stock(product.productID, "L", "Black", quantity=7) == 7

    with pytest.raises(InsufficientStock):
        service.update_stock(product.productID, "M", "White", delta=-5)
    with pytest.raises(ResourceNotFound):
        service.update_stock(9999, "M", "White", delta=1)


def test_list_products_by_category(db_session, make_product):
    make_product(name="Linen Shirt", category="Shirts")
    make_product(name="Wrap Dress", category="Dresses")

    assert [p.name for p in CatalogService(db_session).list_products("Dresses")] == ["Wrap Dress"]
    assert len(CatalogService(db_session).list_products()) == 2
