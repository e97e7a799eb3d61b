import pytest

from storefront.errors import StorefrontError
from storefront.models import StoreSettings
from storefront.services import order_service, settings_service

from conftest import ADDRESS


class TestSettingsService:

    def test_defaults_without_row(self, db_session):
        settings = settings_service.get_settings()
        assert settings.delivery_fee_paise == 4000
        assert settings.free_delivery_threshold_paise == 49900
        # Reading never creates the row
        assert db_session.query(StoreSettings).count() == 0

    def test_ensure_is_idempotent(self, db_session):
        first = settings_service.ensure_settings()
        second = settings_service.ensure_settings()
        assert first.id == second.id
        assert db_session.query(StoreSettings).count() == 1

    def test_update_creates_row(self, db_session):
        settings = settings_service.update_settings({"delivery_fee_paise": 6000, "store_name": "Kanchi Weaves"})
        assert settings.delivery_fee_paise == 6000
        assert settings_service.get_settings().store_name == "Kanchi Weaves"

    def test_unknown_field_rejected(self, db_session):
        with pytest.raises(StorefrontError):
            settings_service.update_settings({"tax_rate": 18})

    def test_negative_threshold_rejected(self, db_session):
        with pytest.raises(StorefrontError):
            settings_service.update_settings({"free_delivery_threshold_paise": -100})

    def test_fee_applies_to_next_order(self, db_session, customer, make_product):
        settings_service.update_settings({
            "delivery_fee_paise": 7500,
            "free_delivery_threshold_paise": 500000,
            "first_order_free_delivery": False,
        })
        product = make_product(price_paise=30000)

        order = order_service.place_order(customer.id, [{"product_id": product.id, "quantity": 1}], ADDRESS)

        assert order.delivery_fee_paise == 7500
        assert order.total_paise == 37500
