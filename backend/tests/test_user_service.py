"""
User account tests.

Verifies:
- Profile updates merge: wishlist, device tokens and addresses survive
- Password change requires the current password
- Address default handling
- Wishlist and device token de-duplication
- Role changes revoke sessions
"""

import pytest

from storefront.errors import ErrorKind, StorefrontError
from storefront.models import SessionToken
from storefront.services import auth_service, session_service, user_service

from conftest import ADDRESS


class TestProfile:

    def test_merge_keeps_lists(self, db_session, customer, saree):
        user_service.add_to_wishlist(customer, saree.id)
        user_service.register_device_token(customer, "device-1")
        user_service.add_address(customer, dict(ADDRESS))

        user = user_service.update_profile(customer, {"display_name": "Meera K", "phone": "9811111111"})

        assert user.display_name == "Meera K"
        assert user.phone == "9811111111"
        assert user.wishlist == [saree.id]
        assert user.fcm_tokens == ["device-1"]
        assert len(user.addresses) == 1

    def test_echoed_read_only_fields_are_ignored(self, db_session, customer):
        payload = customer.to_dict()
        payload["display_name"] = "Renamed"
        payload["role"] = "admin"
        payload["wishlist"] = [1, 2, 3]

        user = user_service.update_profile(customer, payload)

        assert user.display_name == "Renamed"
        assert user.role == "customer"
        assert user.wishlist == []

    def test_password_change_needs_current_password(self, db_session, customer):
        customer.password_hash = auth_service.hash_password("Password123!")
        db_session.commit()

        with pytest.raises(StorefrontError) as exc:
            user_service.update_profile(customer, {"new_password": "NewPass123!", "current_password": "wrong"})
        assert exc.value.kind == ErrorKind.UNAUTHORIZED

        user_service.update_profile(customer, {"new_password": "NewPass123!", "current_password": "Password123!"})
        assert auth_service.verify_password("NewPass123!", customer.password_hash)

    def test_weak_new_password(self, db_session, customer):
        with pytest.raises(StorefrontError):
            user_service.update_profile(customer, {"new_password": "short"})


class TestRegistration:

    def test_register_and_authenticate(self, db_session):
        user = user_service.register("Asha@Example.com", "Password123!", display_name="Asha")
        assert user.email == "asha@example.com"
        assert user.role == "customer"
        assert user.uid.startswith("local-")
        assert auth_service.authenticate("asha@example.com", "Password123!").id == user.id

    def test_duplicate_email(self, db_session, customer):
        with pytest.raises(StorefrontError) as exc:
            user_service.register("MEERA@example.com", "Password123!")
        assert exc.value.kind == ErrorKind.CONFLICT

    def test_invalid_email(self, db_session):
        with pytest.raises(StorefrontError):
            user_service.register("not-an-email", "Password123!")

    def test_sync_merges_provider_profile(self, db_session, customer):
        user = user_service.sync_user(
            uid="google-123",
            email="meera@example.com",
            display_name="",
            provider="google",
            avatar="https://cdn.example.com/meera.png",
        )
        assert user.id == customer.id
        # Empty incoming name does not wipe the stored one
        assert user.display_name == "Meera"
        assert user.avatar == "https://cdn.example.com/meera.png"


class TestAddresses:

    def test_first_address_is_default(self, db_session, customer):
        first = user_service.add_address(customer, dict(ADDRESS))
        second = user_service.add_address(customer, {**ADDRESS, "label": "Work"})
        assert first.is_default is True
        assert second.is_default is False

    def test_switch_default(self, db_session, customer):
        first = user_service.add_address(customer, dict(ADDRESS))
        second = user_service.add_address(customer, {**ADDRESS, "label": "Work", "is_default": True})
        assert second.is_default is True
        assert first.is_default is False

        user_service.set_default_address(customer, first.id)
        assert user_service.get_default_address(customer).id == first.id

    def test_deleting_default_promotes_next(self, db_session, customer):
        first = user_service.add_address(customer, dict(ADDRESS))
        second = user_service.add_address(customer, {**ADDRESS, "label": "Work"})

        user_service.delete_address(customer, first.id)

        assert [a.id for a in customer.addresses] == [second.id]
        assert customer.addresses[0].is_default is True

    def test_address_requires_pincode(self, db_session, customer):
        with pytest.raises(StorefrontError):
            user_service.add_address(customer, {"full_address": "12 Temple Street", "city": "Chennai"})

    def test_other_users_address_not_found(self, db_session, customer, other_customer):
        address = user_service.add_address(other_customer, dict(ADDRESS))
        with pytest.raises(StorefrontError) as exc:
            user_service.update_address(customer, address.id, {"city": "Madurai"})
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_checkout_address_resolution(self, db_session, customer):
        assert user_service.resolve_shipping_address(customer) is None
        saved = user_service.add_address(customer, {**ADDRESS, "label": "Work"})

        assert user_service.resolve_shipping_address(customer)["label"] == "Work"
        assert user_service.resolve_shipping_address(customer, address_id=saved.id)["city"] == "Kanchipuram"
        explicit = {"full_address": "1 Beach Road", "city": "Puri", "pincode": "752001"}
        assert user_service.resolve_shipping_address(customer, explicit, saved.id) == explicit

    @pytest.mark.parametrize("address_id", ["abc", "", 0, "1e3"])
    def test_malformed_address_id_rejected(self, db_session, customer, address_id):
        user_service.add_address(customer, dict(ADDRESS))
        with pytest.raises(StorefrontError) as exc:
            user_service.resolve_shipping_address(customer, address_id=address_id)
        assert exc.value.kind == ErrorKind.VALIDATION


class TestWishlistAndTokens:

    def test_wishlist_dedupes(self, db_session, customer, saree):
        user_service.add_to_wishlist(customer, saree.id)
        assert user_service.add_to_wishlist(customer, saree.id) == [saree.id]
        assert user_service.remove_from_wishlist(customer, saree.id) == []

    def test_wishlist_unknown_product(self, db_session, customer):
        with pytest.raises(StorefrontError) as exc:
            user_service.add_to_wishlist(customer, 999)
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_wishlist_skips_deleted_products(self, db_session, customer, make_product):
        keep = make_product(name="Keep")
        gone = make_product(name="Gone")
        user_service.add_to_wishlist(customer, keep.id)
        user_service.add_to_wishlist(customer, gone.id)
        db_session.delete(gone)
        db_session.commit()

        assert [p.name for p in user_service.list_wishlist(customer)] == ["Keep"]

    def test_device_tokens_dedupe(self, db_session, customer):
        user_service.register_device_token(customer, "device-1")
        user_service.register_device_token(customer, " device-1 ")
        assert user_service.register_device_token(customer, "device-2") == ["device-1", "device-2"]
        assert user_service.unregister_device_token(customer, "device-1") == ["device-2"]

    def test_blank_token(self, db_session, customer):
        with pytest.raises(StorefrontError):
            user_service.register_device_token(customer, "  ")


class TestRoles:

    def test_set_role_revokes_sessions(self, db_session, customer, admin):
        session_service.create_session(customer.id)

        user = user_service.set_role(customer.id, "delivery", actor=admin)

        assert user.role == "delivery"
        active = db_session.query(SessionToken).filter_by(user_id=customer.id, is_revoked=False).count()
        assert active == 0

    def test_cannot_change_own_role(self, db_session, admin):
        with pytest.raises(StorefrontError) as exc:
            user_service.set_role(admin.id, "customer", actor=admin)
        assert exc.value.kind == ErrorKind.FORBIDDEN

    def test_invalid_role(self, db_session, customer):
        with pytest.raises(StorefrontError):
            user_service.set_role(customer.id, "superuser")

    def test_list_by_role(self, db_session, customer, admin, courier):
        assert [u.email for u in user_service.list_users("delivery")] == [courier.email]
