# Models package — import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.product import Product  # noqa: F401
from app.models.purchase import Purchase  # noqa: F401
from app.models.invoice import Invoice  # noqa: F401
from app.models.pending_order import PendingOrder, PendingOrderItem  # noqa: F401
from app.models.admin_setting import AdminSetting  # noqa: F401
from app.models.stripe_event import StripeEvent  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
