"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit — we apply per-route
)


@login_manager.request_loader
def load_user_from_request(request):
    """Resolve the caller from an `Authorization: Bearer <token>` header.

    Imports lazily to avoid circular deps. Returns None (anonymous)
    when the header is missing or the token is bad or expired.
    """
    from app.services.auth_service import load_user_from_token

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return load_user_from_token(header[len("Bearer "):].strip())
