# Models package: import all models here so Alembic can discover them.

from fulfillment.models.cart import PendingCart  # noqa: F401
from fulfillment.models.order import Order  # noqa: F401
from fulfillment.models.claim import FulfillmentClaim  # noqa: F401
from fulfillment.models.stripe_event import StripeEvent  # noqa: F401
from fulfillment.models.notification import NotificationRecord  # noqa: F401
