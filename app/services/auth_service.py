"""Bearer token helpers.

Tokens are itsdangerous signatures of the user id, salted and
time-limited (AUTH_TOKEN_MAX_AGE). Loaded by the Flask-Login
request_loader in app.extensions.
"""

import logging

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.extensions import db
from app.models.user import User

logger = logging.getLogger(__name__)


def _serializer():
    return URLSafeTimedSerializer(
        current_app.config["SECRET_KEY"],
        salt=current_app.config["AUTH_TOKEN_SALT"],
    )


def issue_token(user):
    """Return a signed bearer token for `user`."""
    return _serializer().dumps({"uid": user.id})


def load_user_from_token(token):
    """Return the active User for a token, or None."""
    if not token:
        return None
    try:
        data = _serializer().loads(
            token, max_age=current_app.config["AUTH_TOKEN_MAX_AGE"]
        )
    except SignatureExpired:
        logger.info("Rejected expired bearer token")
        return None
    except BadSignature:
        logger.warning("Rejected bearer token with bad signature")
        return None

    user = db.session.get(User, data.get("uid"))
    if user is None or not user.is_active:
        return None
    return user
