"""
Catalog tests: stock primitives, ratings, listings and category counts.
"""

import pytest

from storefront.errors import ErrorKind, StorefrontError
from storefront.models import Product
from storefront.services import catalog_service, order_service

from conftest import ADDRESS


def _fresh(db_session, product):
    db_session.expire_all()
    return db_session.get(Product, product.id)


class TestStockPrimitives:

    def test_reserve_takes_units_and_records_sale(self, db_session, saree):
        catalog_service.reserve_stock(saree.id, 4)
        db_session.commit()

        fresh = _fresh(db_session, saree)
        assert fresh.stock == 6
        assert fresh.sales_count == 4

    def test_reserve_exact_remaining_stock(self, db_session, make_product):
        product = make_product(stock=2)
        catalog_service.reserve_stock(product.id, 2)
        db_session.commit()
        assert _fresh(db_session, product).stock == 0

    def test_reserve_more_than_available(self, db_session, make_product):
        product = make_product(stock=2)
        with pytest.raises(StorefrontError) as exc:
            catalog_service.reserve_stock(product.id, 3)
        assert exc.value.kind == ErrorKind.OUT_OF_STOCK
        assert exc.value.details["available"] == 2
        db_session.rollback()
        assert _fresh(db_session, product).stock == 2

    def test_reserve_missing_product(self, db_session):
        with pytest.raises(StorefrontError) as exc:
            catalog_service.reserve_stock(12345, 1)
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_reserve_without_sale(self, db_session, saree):
        catalog_service.reserve_stock(saree.id, 1, record_sale=False)
        db_session.commit()
        assert _fresh(db_session, saree).sales_count == 0

    def test_release_floors_sales_count(self, db_session, make_product):
        product = make_product(stock=0, sales_count=2)
        assert catalog_service.release_stock(product.id, 5) is True
        db_session.commit()

        fresh = _fresh(db_session, product)
        assert fresh.stock == 5
        assert fresh.sales_count == 0

    def test_release_for_return_keeps_sales_count(self, db_session, make_product):
        product = make_product(stock=0, sales_count=2)
        catalog_service.release_stock(product.id, 1, reverse_sale=False)
        db_session.commit()
        assert _fresh(db_session, product).sales_count == 2

    def test_release_missing_product(self, db_session):
        assert catalog_service.release_stock(12345, 1) is False

    def test_cached_instance_sees_update(self, db_session, saree):
        assert saree.stock == 10
        catalog_service.reserve_stock(saree.id, 3)
        # Same session, no commit yet
        assert saree.stock == 7
        db_session.rollback()

    def test_sequential_orders_never_oversell(self, db_session, customer, make_product):
        product = make_product(stock=3)
        placed = 0
        for _ in range(5):
            try:
                order_service.place_order(
                    customer.id, [{"product_id": product.id, "quantity": 1}], ADDRESS
                )
                placed += 1
            except StorefrontError as e:
                assert e.kind == ErrorKind.OUT_OF_STOCK
        assert placed == 3
        assert _fresh(db_session, product).stock == 0


class TestProducts:

    def test_create_defaults_images_to_main_image(self, db_session):
        product = catalog_service.create_product({
            "name": "Banarasi Saree",
            "category": "Banarasi",
            "image": "https://cdn.example.com/banarasi.jpg",
            "price_paise": 250000,
            "stock": 3,
        })
        assert product.images == ["https://cdn.example.com/banarasi.jpg"]
        assert product.sales_count == 0

    def test_create_requires_fields(self, db_session):
        with pytest.raises(StorefrontError) as exc:
            catalog_service.create_product({"name": "Nameless"})
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_negative_stock_rejected(self, db_session, saree):
        with pytest.raises(StorefrontError):
            catalog_service.update_product(saree.id, {"stock": -1})

    def test_sales_count_is_not_writable(self, db_session, saree):
        with pytest.raises(StorefrontError):
            catalog_service.update_product(saree.id, {"sales_count": 500})

    def test_stale_version_conflicts(self, db_session, saree):
        version = saree.version_id
        catalog_service.reserve_stock(saree.id, 1)
        db_session.commit()

        with pytest.raises(StorefrontError) as exc:
            catalog_service.update_product(saree.id, {"price_paise": 90000, "version_id": version})
        assert exc.value.kind == ErrorKind.CONFLICT

    def test_update_without_version_after_stock_movement(self, db_session, saree):
        catalog_service.reserve_stock(saree.id, 1)
        db_session.commit()

        product = catalog_service.update_product(saree.id, {"price_paise": 90000})
        assert product.price_paise == 90000
        assert product.stock == 9

    @pytest.mark.parametrize("version", ["abc", "", 0, -3, "1.5"])
    def test_malformed_version_rejected(self, db_session, saree, version):
        with pytest.raises(StorefrontError) as exc:
            catalog_service.update_product(saree.id, {"price_paise": 90000, "version_id": version})
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_listing_sort_and_search(self, db_session, make_product):
        make_product(name="Cotton Saree", category="Cotton", description="Breathable everyday weave", price_paise=30000)
        make_product(name="Silk Saree", category="Silk", description="Handwoven pure silk", price_paise=150000)
        make_product(name="Linen Saree", category="Linen", description="Light summer drape", price_paise=60000, stock=0)

        by_price = [p.name for p in catalog_service.list_products(sort="price_asc")]
        assert by_price == ["Cotton Saree", "Linen Saree", "Silk Saree"]

        assert [p.name for p in catalog_service.list_products(search="silk")] == ["Silk Saree"]
        available = [p.name for p in catalog_service.list_products(available_only=True, sort="price_asc")]
        assert available == ["Cotton Saree", "Silk Saree"]

    def test_invalid_sort(self, db_session):
        with pytest.raises(StorefrontError):
            catalog_service.list_products(sort="random")

    def test_trending_orders_by_sales(self, db_session, make_product):
        make_product(name="Quiet", sales_count=1)
        make_product(name="Hot", sales_count=40)
        make_product(name="Hidden", sales_count=99, is_available=False)
        assert [p.name for p in catalog_service.trending_products(2)] == ["Hot", "Quiet"]

    def test_recommendations_follow_purchase_categories(self, db_session, customer, make_product):
        bought = make_product(name="Bought Silk", category="Silk")
        make_product(name="Other Silk", category="Silk", sales_count=5)
        make_product(name="Cotton", category="Cotton", sales_count=50)
        order_service.place_order(customer.id, [{"product_id": bought.id, "quantity": 1}], ADDRESS)

        picks = [p.name for p in catalog_service.recommend_products(customer.id, limit=2)]
        # Same-category picks first, then topped up from trending
        assert picks == ["Other Silk", "Cotton"]


class TestRatings:

    def test_rating_aggregates(self, db_session, saree, customer, other_customer):
        catalog_service.rate_product(saree.id, customer, 5, "Beautiful weave")
        product = catalog_service.rate_product(saree.id, other_customer, 4)
        assert product.review_count == 2
        assert product.average_rating == 4.5

    def test_rerating_replaces_previous(self, db_session, saree, customer):
        catalog_service.rate_product(saree.id, customer, 2)
        product = catalog_service.rate_product(saree.id, customer, 4)
        assert product.review_count == 1
        assert product.average_rating == 4.0

    @pytest.mark.parametrize("rating", [0, 6, "five", True, None])
    def test_invalid_rating(self, db_session, saree, customer, rating):
        with pytest.raises(StorefrontError):
            catalog_service.rate_product(saree.id, customer, rating)


class TestCategories:

    def test_counts_by_category(self, db_session, category, make_product):
        make_product(category="Silk")
        make_product(category="Silk")
        make_product(category="Cotton")

        counts = catalog_service.category_counts()
        assert counts == {"Silk": 2, "Cotton": 1}

        listed = catalog_service.list_categories()
        assert listed[0]["name"] == "Silk"
        assert listed[0]["product_count"] == 2

    def test_category_without_products(self, db_session):
        catalog_service.create_category({"name": "Chiffon", "image": "https://cdn.example.com/chiffon.jpg"})
        assert catalog_service.list_categories()[0]["product_count"] == 0

    def test_duplicate_name_case_insensitive(self, db_session, category):
        with pytest.raises(StorefrontError) as exc:
            catalog_service.create_category({"name": "silk", "image": "x.jpg"})
        assert exc.value.kind == ErrorKind.CONFLICT
