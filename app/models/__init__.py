# Models package — import all models here so Alembic can discover them.

from app.models.sale import Sale  # noqa: F401
from app.models.affiliate import Affiliate  # noqa: F401
from app.models.webhook_event import ProcessedWebhookEvent  # noqa: F401
