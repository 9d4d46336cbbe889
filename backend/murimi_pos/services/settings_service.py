from __future__ import annotations

from ..extensions import db
from ..models import Setting


# Business settings shown on receipts; seeded by `flask system init`
DEFAULT_SETTINGS = {
    "business_name": ("Murimi POS", "Business name on receipts"),
    "business_address": ("Nairobi, Kenya", "Business address on receipts"),
    "business_phone": ("+254 700 000 000", "Business phone on receipts"),
    "business_email": ("info@murimipos.com", "Business email on receipts"),
    "currency": ("KES", "Currency code"),
    "receipt_footer": ("Thank you for your business!", "Footer line printed on receipts"),
}


def get_setting(key: str, default: str | None = None) -> str | None:
    row = db.session.query(Setting).filter_by(key=key).first()
    if row is not None and row.value is not None:
        return row.value
    if default is not None:
        return default
    fallback = DEFAULT_SETTINGS.get(key)
    return fallback[0] if fallback else None


def get_settings(keys) -> dict[str, str | None]:
    return {key: get_setting(key) for key in keys}


def upsert_setting(key: str, value: str | None, description: str | None = None) -> Setting:
    row = db.session.query(Setting).filter_by(key=key).first()
    if row is None:
        row = Setting(key=key)
        db.session.add(row)
    row.value = value
    if description is not None:
        row.description = description
    db.session.commit()
    return row


def seed_default_settings() -> int:
    """Insert any missing default settings. Existing values are left alone. Returns rows created."""
    existing = {row.key for row in db.session.query(Setting.key).all()}
    created = 0
    for key, (value, description) in DEFAULT_SETTINGS.items():
        if key in existing:
            continue
        db.session.add(Setting(key=key, value=value, description=description))
        created += 1
    db.session.commit()
    return created
