"""Error taxonomy for the webhook pipeline and the platform API client.

None of these ever reach the webhook caller — the webhook route always
acknowledges with 200. They exist so each pipeline stage can be logged
and isolated by failure class.
"""


class WebhookError(Exception):
    """Base class for pipeline errors."""


class MalformedPayload(WebhookError):
    """Body could not be parsed under any supported encoding."""


class ValidationFailed(WebhookError):
    """Parsed event is missing required identity fields."""


class PersistenceFailure(WebhookError):
    """Primary sale / affiliate upsert failed. Fatal to the event."""


class DerivedStateFailure(WebhookError):
    """Affiliate rollup recompute failed. Logged and swallowed."""


class NotificationFailure(WebhookError):
    """A notification channel failed to deliver. Logged and swallowed."""


class ConfigurationMissing(WebhookError):
    """A required capability (storage, credentials) is not configured."""


class DigistoreApiError(Exception):
    """Digistore24 REST API call failed after retries."""

    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
