# Overview: Service-layer operations for shopper accounts; profile, addresses, wishlist, device tokens.

"""
User Service

Profile updates use MERGE semantics: only the scalar fields present in the
payload change. addresses, wishlist and fcm_tokens each have their own
operations and are never replaced wholesale by a profile update, so an
unrelated profile edit from a stale client cannot wipe them.

JSON list columns are always reassigned (never mutated in place) so the
ORM detects the change.
"""

from __future__ import annotations

import re
import uuid

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import Product, User, UserAddress
from ..models.auth import ROLE_CUSTOMER, VALID_ROLES
from ..validation import ModelValidationPolicy, require_positive_int, validate_payload
from . import auth_service, session_service


class UserError(StorefrontError):
    """Raised for profile, address and wishlist problems."""
    default_kind = ErrorKind.VALIDATION


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PROFILE_POLICY = ModelValidationPolicy(
    writable_fields={"display_name", "phone", "avatar"},
)

# Keys a client may echo back from GET /profile; they are ignored on update
PROFILE_IGNORED_FIELDS = {
    "id", "uid", "email", "role", "provider", "addresses", "wishlist",
    "fcm_tokens", "is_active", "created_at", "updated_at", "last_login_at",
}

ADDRESS_POLICY = ModelValidationPolicy(
    writable_fields={"label", "full_address", "city", "pincode", "phone", "is_default"},
    required_on_create={"full_address", "city", "pincode"},
)


def _normalize_email(email: str | None) -> str:
    value = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise UserError("A valid email address is required")
    return value


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise UserError("User not found", kind=ErrorKind.NOT_FOUND)
    return user


def sync_user(
    uid: str,
    email: str,
    display_name: str | None = None,
    provider: str = "email",
    avatar: str | None = None,
    phone: str | None = None,
    password_hash: str | None = None,
) -> User:
    """
    Create the user on first sign-in, merge profile fields afterwards.

    Lookup is by uid first, then by email (an account created with a
    password can later sign in through a provider with the same email).
    Existing values are only overwritten by non-empty incoming values.
    """
    email = _normalize_email(email)
    user = db.session.query(User).filter_by(uid=uid).first()
    if user is None:
        user = db.session.query(User).filter_by(email=email).first()

    if user is None:
        user = User(
            uid=uid,
            email=email,
            display_name=(display_name or "").strip() or email.split("@")[0],
            provider=provider or "email",
            avatar=avatar,
            phone=phone,
            password_hash=password_hash,
            role=ROLE_CUSTOMER,
            wishlist=[],
            fcm_tokens=[],
        )
        db.session.add(user)
    else:
        if display_name and display_name.strip():
            user.display_name = display_name.strip()
        if avatar:
            user.avatar = avatar
        if phone:
            user.phone = phone
        if password_hash and not user.password_hash:
            user.password_hash = password_hash

    db.session.commit()
    return user


def register(email: str, password: str, display_name: str | None = None, phone: str | None = None) -> User:
    """Create a local email/password account."""
    email = _normalize_email(email)
    if db.session.query(User).filter_by(email=email).first():
        raise UserError("An account with this email already exists", kind=ErrorKind.CONFLICT)

    password_hash = auth_service.hash_password(password)
    return sync_user(
        uid=f"local-{uuid.uuid4().hex}",
        email=email,
        display_name=display_name,
        provider="email",
        phone=phone,
        password_hash=password_hash,
    )


def update_profile(user: User, data: dict) -> User:
    """
    Merge the provided profile fields into the user.

    Password change: {"new_password", "current_password"}; the current
    password is required whenever the account already has one.
    """
    data = dict(data or {})
    new_password = data.pop("new_password", None)
    current_password = data.pop("current_password", None)
    for key in PROFILE_IGNORED_FIELDS:
        data.pop(key, None)

    patch = validate_payload(model=User, payload=data, policy=PROFILE_POLICY, partial=True)

    if new_password is not None:
        if user.password_hash and not auth_service.verify_password(current_password or "", user.password_hash):
            raise UserError("Current password is incorrect", kind=ErrorKind.UNAUTHORIZED)
        user.password_hash = auth_service.hash_password(new_password)

    for key, value in patch.items():
        setattr(user, key, value)

    db.session.commit()
    return user


# =============================================================================
# ADDRESSES
# =============================================================================

def _get_address(user: User, address_id: int) -> UserAddress:
    address = db.session.query(UserAddress).filter_by(id=address_id, user_id=user.id).first()
    if not address:
        raise UserError("Address not found", kind=ErrorKind.NOT_FOUND)
    return address


def _make_default(user: User, address: UserAddress) -> None:
    for other in user.addresses:
        other.is_default = other is address


def add_address(user: User, data: dict) -> UserAddress:
    patch = validate_payload(model=UserAddress, payload=data, policy=ADDRESS_POLICY, partial=False)
    patch.setdefault("label", "Home")
    wants_default = bool(patch.pop("is_default", False))

    address = UserAddress(user_id=user.id, is_default=False, **patch)
    user.addresses.append(address)
    db.session.flush()

    # The first address is always the default
    if wants_default or len(user.addresses) == 1:
        _make_default(user, address)

    db.session.commit()
    return address


def update_address(user: User, address_id: int, data: dict) -> UserAddress:
    address = _get_address(user, address_id)
    patch = validate_payload(model=UserAddress, payload=data, policy=ADDRESS_POLICY, partial=True)
    wants_default = patch.pop("is_default", None)

    for key, value in patch.items():
        setattr(address, key, value)
    if wants_default:
        _make_default(user, address)

    db.session.commit()
    return address


def delete_address(user: User, address_id: int) -> None:
    address = _get_address(user, address_id)
    was_default = address.is_default
    user.addresses.remove(address)
    db.session.flush()

    if was_default and user.addresses:
        _make_default(user, user.addresses[0])

    db.session.commit()


def set_default_address(user: User, address_id: int) -> UserAddress:
    address = _get_address(user, address_id)
    _make_default(user, address)
    db.session.commit()
    return address


def get_default_address(user: User) -> UserAddress | None:
    for address in user.addresses:
        if address.is_default:
            return address
    return user.addresses[0] if user.addresses else None


def resolve_shipping_address(user: User, shipping_address=None, address_id=None):
    """
    Checkout address: an explicit address wins, then a saved address id,
    then the user's default. Returns None when there is nothing to use.
    """
    if shipping_address:
        return shipping_address
    if address_id is not None:
        return _get_address(user, require_positive_int("address_id", address_id)).to_shipping_address()
    default = get_default_address(user)
    return default.to_shipping_address() if default else None


# =============================================================================
# WISHLIST
# =============================================================================

def list_wishlist(user: User) -> list[Product]:
    ids = list(user.wishlist or [])
    if not ids:
        return []
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}
    # Keep the user's ordering; silently skip products deleted since
    return [products[i] for i in ids if i in products]


def add_to_wishlist(user: User, product_id: int) -> list[int]:
    if not db.session.get(Product, product_id):
        raise UserError("Product not found", kind=ErrorKind.NOT_FOUND)
    current = list(user.wishlist or [])
    if product_id not in current:
        user.wishlist = current + [product_id]
        db.session.commit()
    return list(user.wishlist)


def remove_from_wishlist(user: User, product_id: int) -> list[int]:
    current = list(user.wishlist or [])
    if product_id in current:
        user.wishlist = [pid for pid in current if pid != product_id]
        db.session.commit()
    return list(user.wishlist)


def prune_wishlist(user: User, product_ids) -> None:
    """Drop purchased products from the wishlist. Caller commits."""
    purchased = set(product_ids)
    current = list(user.wishlist or [])
    remaining = [pid for pid in current if pid not in purchased]
    if len(remaining) != len(current):
        user.wishlist = remaining


# =============================================================================
# DEVICE TOKENS
# =============================================================================

def register_device_token(user: User, token: str) -> list[str]:
    token = (token or "").strip()
    if not token:
        raise UserError("token is required")
    current = list(user.fcm_tokens or [])
    if token not in current:
        user.fcm_tokens = current + [token]
        db.session.commit()
    return list(user.fcm_tokens)


def unregister_device_token(user: User, token: str) -> list[str]:
    token = (token or "").strip()
    current = list(user.fcm_tokens or [])
    if token in current:
        user.fcm_tokens = [t for t in current if t != token]
        db.session.commit()
    return list(user.fcm_tokens)


# =============================================================================
# ADMIN
# =============================================================================

def list_users(role: str | None = None) -> list[User]:
    query = db.session.query(User)
    if role:
        role = role.strip().lower()
        if role not in VALID_ROLES:
            raise UserError(f"Invalid role: {role}")
        query = query.filter(User.role == role)
    return query.order_by(User.created_at.desc(), User.id.desc()).all()


def set_role(user_id: int, role: str, actor: User | None = None) -> User:
    """
    Change a user's role and revoke their sessions so the new role applies
    on next sign-in.
    """
    role = (role or "").strip().lower()
    if role not in VALID_ROLES:
        raise UserError(f"Invalid role: {role}")

    user = get_user(user_id)
    if actor is not None and actor.id == user.id and role != user.role:
        raise UserError("You cannot change your own role", kind=ErrorKind.FORBIDDEN)

    if user.role != role:
        user.role = role
        db.session.commit()
        session_service.revoke_all_user_sessions(user.id, reason="Role changed")
    return user
