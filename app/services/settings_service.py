"""Settings service — runtime configuration stored in admin_settings.

The Stripe secret key is read from the database instead of the
environment so super-admins can rotate it without a redeploy. Reads go
through a small per-process cache (SETTINGS_CACHE_TTL seconds);
set_setting() drops the cached entry so the writing process sees the
new value immediately. Other processes pick it up when their TTL lapses.
"""

import logging
import threading
import time

from flask import current_app

from app.errors import ConfigurationError, ValidationError
from app.extensions import db
from app.models.admin_setting import AdminSetting
from app.models.audit import AuditEvent

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = "STRIPE_SECRET_KEY"
STRIPE_WEBHOOK_SECRET = "STRIPE_WEBHOOK_SECRET"

# Keys the admin API may write.
EDITABLE_KEYS = (STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET)

_cache = {}  # key -> (value, fetched_at)
_cache_lock = threading.Lock()


def get_setting(key, default=None):
    """Return the value for `key`, or `default` if unset or empty."""
    ttl = current_app.config.get("SETTINGS_CACHE_TTL", 0)
    now = time.monotonic()

    if ttl > 0:
        with _cache_lock:
            cached = _cache.get(key)
        if cached and now - cached[1] < ttl:
            return cached[0] if cached[0] else default

    row = AdminSetting.query.filter_by(key=key).first()
    value = row.value if row else None

    if ttl > 0:
        with _cache_lock:
            _cache[key] = (value, now)

    return value if value else default


def set_setting(key, value, actor_user_id=None):
    """Create or update a setting and invalidate its cache entry.

    Flushes only; the caller commits.
    """
    if key not in EDITABLE_KEYS:
        raise ValidationError(f"Unknown setting '{key}'")

    row = AdminSetting.query.filter_by(key=key).first()
    if row:
        row.value = value
        row.updated_by = actor_user_id
    else:
        row = AdminSetting(key=key, value=value, updated_by=actor_user_id)
        db.session.add(row)

    # Never log or audit the value itself.
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="setting.updated",
        metadata_={"key": key},
    ))
    db.session.flush()
    invalidate(key)
    logger.info(f"Setting {key} updated by {actor_user_id or 'cli'}")
    return row


def invalidate(key=None):
    """Drop one cached key, or the whole cache."""
    with _cache_lock:
        if key is None:
            _cache.clear()
        else:
            _cache.pop(key, None)


def get_stripe_secret_key():
    """Return the Stripe secret key or raise ConfigurationError."""
    key = get_setting(STRIPE_SECRET_KEY)
    if not key:
        logger.error("STRIPE_SECRET_KEY is not set in admin_settings")
        raise ConfigurationError()
    return key


def get_webhook_secret():
    """Webhook signing secret: settings table first, then app config."""
    secret = get_setting(
        STRIPE_WEBHOOK_SECRET,
        default=current_app.config.get("STRIPE_WEBHOOK_SECRET"),
    )
    if not secret:
        logger.error("No Stripe webhook signing secret configured")
        raise ConfigurationError("Stripe webhook secret is not configured")
    return secret
