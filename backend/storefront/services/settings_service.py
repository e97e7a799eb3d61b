from __future__ import annotations

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import StoreSettings
from ..validation import ModelValidationPolicy, validate_payload
from .concurrency import run_with_retry


class SettingsError(StorefrontError):
    default_kind = ErrorKind.VALIDATION


SETTINGS_POLICY = ModelValidationPolicy(
    writable_fields={
        "store_name",
        "delivery_fee_paise",
        "free_delivery_threshold_paise",
        "first_order_free_delivery",
    },
)

DEFAULT_SETTINGS = {
    "store_name": "Saree Storefront",
    "delivery_fee_paise": 4000,
    "free_delivery_threshold_paise": 49900,
    "first_order_free_delivery": True,
}


def get_settings() -> StoreSettings:
    """
    Return the settings row, or an unsaved defaults object when none exists.

    Never writes: pricing reads this inside the order transaction.
    """
    settings = db.session.query(StoreSettings).order_by(StoreSettings.id.asc()).first()
    if settings is None:
        settings = StoreSettings(version_id=1, **DEFAULT_SETTINGS)
    return settings


def ensure_settings() -> StoreSettings:
    """Create the settings row with defaults if it does not exist yet."""
    settings = db.session.query(StoreSettings).order_by(StoreSettings.id.asc()).first()
    if settings is None:
        settings = StoreSettings(**DEFAULT_SETTINGS)
        db.session.add(settings)
        db.session.commit()
    return settings


def update_settings(data: dict) -> StoreSettings:
    patch = validate_payload(model=StoreSettings, payload=data, policy=SETTINGS_POLICY, partial=True)
    for key in ("delivery_fee_paise", "free_delivery_threshold_paise"):
        if key in patch and patch[key] is not None and patch[key] < 0:
            raise SettingsError(f"{key} must be >= 0")

    def _op():
        settings = ensure_settings()
        for key, value in patch.items():
            setattr(settings, key, value)
        db.session.commit()
        return settings

    return run_with_retry(_op)
