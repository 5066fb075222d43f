"""Event validator — minimum shape check before processing.

Permissive by intent: unknown-but-well-formed event kinds pass (the
platform's event catalogue isn't ours), structurally broken events
don't. validate_event() never raises and logs every rejection with its
reason; require_valid() is the raising form used by the pipeline.
"""

import logging

from app.exceptions import ValidationFailed
from app.services.event_normalizer import CanonicalEvent, EventPayload

logger = logging.getLogger(__name__)


def validate_event(event):
    """Return True if the event can be processed, False otherwise."""
    if not isinstance(event, CanonicalEvent):
        logger.warning("Validation failed: event is not a structured object")
        return False

    if not event.kind:
        logger.warning(f"Validation failed: missing event kind (event_id={event.event_id})")
        return False

    if not isinstance(event.payload, EventPayload):
        logger.warning(
            f"Validation failed: missing or invalid payload object "
            f"(kind={event.kind}, event_id={event.event_id})"
        )
        return False

    # transaction_id is already folded into order_id by the normalizer
    if not (event.payload.order_id or "").strip():
        logger.warning(
            f"Validation failed: missing order_id or transaction_id "
            f"(kind={event.kind}, event_id={event.event_id})"
        )
        return False

    if not event.is_known_kind:
        logger.warning(
            f"Validation warning: unknown event kind '{event.raw_kind}' — accepting"
        )

    return True


def require_valid(event):
    """validate_event() that raises ValidationFailed instead of returning False."""
    if not validate_event(event):
        raise ValidationFailed(
            f"Event failed validation (kind={getattr(event, 'raw_kind', None)}, "
            f"event_id={getattr(event, 'event_id', None)})"
        )
    return event
