"""
Custom route decorators for access control.

- api_login_required: caller must present a valid bearer token.
- admin_required: caller must be logged in AND have is_admin=True.
- super_admin_required: caller must be logged in AND have is_super_admin=True.

Failures raise the JSON error taxonomy from app.errors.
"""

from functools import wraps

from flask_login import current_user

from app.errors import AuthenticationError, AuthorizationError


def api_login_required(f):
    """Require a valid bearer token."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthenticationError()
        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    """Require login + is_admin flag."""

    @wraps(f)
    @api_login_required
    def decorated(*args, **kwargs):
        if not (current_user.is_admin or current_user.is_super_admin):
            raise AuthorizationError("Forbidden - Admin only")
        return f(*args, **kwargs)

    return decorated


def super_admin_required(f):
    """Require login + is_super_admin flag."""

    @wraps(f)
    @api_login_required
    def decorated(*args, **kwargs):
        if not current_user.is_super_admin:
            raise AuthorizationError("Forbidden - Super admin only")
        return f(*args, **kwargs)

    return decorated
