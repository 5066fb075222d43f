"""Event normalizer — raw webhook body -> CanonicalEvent.

Responsible for:
- Decoding the body as JSON, form-encoded, or raw text (JSON first,
  then query-string) depending on the declared content type
- Folding the platform's field aliases into one canonical payload
- Mapping platform event names (on_payment, on_refund, ...) to
  canonical kinds
- Applying defaults (currency, status, payment date)

Pure: never touches storage or the network.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import parse_qsl

from app.exceptions import MalformedPayload

logger = logging.getLogger(__name__)

# Canonical kinds
PAYMENT = "payment"
REBILL = "rebill"
REFUND = "refund"
AFFILIATE_APPROVED = "affiliate_approved"

KNOWN_KINDS = (PAYMENT, REBILL, REFUND, AFFILIATE_APPROVED)

# Platform event name -> canonical kind. Anything not listed here is
# kept verbatim and routed to the no-op handler.
EVENT_KINDS = {
    "on_payment": PAYMENT,
    "payment": PAYMENT,
    "on_rebill": REBILL,
    "rebill": REBILL,
    "on_refund": REFUND,
    "refund": REFUND,
    "on_affiliate_approved": AFFILIATE_APPROVED,
    "on_affiliation": AFFILIATE_APPROVED,
    "affiliate_approved": AFFILIATE_APPROVED,
}

# Canonical field -> accepted aliases, in priority order.
FIELD_ALIASES = {
    "kind": ("event", "event_type", "type"),
    "event_id": ("event_id", "id", "ipn_id", "notification_id"),
    "order_id": ("order_id", "transaction_id", "orderid"),
    "product_id": ("product_id",),
    "product_name": ("product_name", "product_name_intern", "product"),
    "amount": ("amount", "pay_amount", "transaction_amount", "refund_amount"),
    "currency": ("currency", "pay_currency"),
    "buyer_email": ("buyer_email", "email", "address_email"),
    "buyer_name": ("buyer_name", "customer_name", "name"),
    "affiliate_id": ("affiliate_id", "affiliate", "affiliate_name"),
    "affiliate_name": ("affiliate_name", "name", "buyer_name"),
    "affiliate_email": ("affiliate_email", "email", "buyer_email"),
    "status": ("status", "payment_status", "billing_status"),
    "payment_date": ("payment_date", "created_at", "order_date", "timestamp"),
}

# (first, last) alias pairs used when no full buyer name is present
BUYER_NAME_PARTS = (
    ("buyer_first_name", "buyer_last_name"),
    ("address_first_name", "address_last_name"),
)

# Keys under which a nested payload object may arrive
PAYLOAD_KEYS = ("data", "payload")

JSON_CONTENT_TYPES = ("application/json", "text/json")
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@dataclass
class EventPayload:
    """Normalized sale / affiliate sub-record."""

    order_id: str
    amount: Decimal = Decimal("0")
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    currency: str = "EUR"
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    affiliate_id: Optional[str] = None
    affiliate_name: Optional[str] = None
    affiliate_email: Optional[str] = None
    status: str = "completed"
    payment_date: Optional[datetime] = None


@dataclass
class CanonicalEvent:
    """Internal representation of one inbound webhook delivery."""

    kind: Optional[str]
    event_id: Optional[str] = None
    raw_kind: Optional[str] = None
    payload: Optional[EventPayload] = None
    received_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_known_kind(self):
        return self.kind in KNOWN_KINDS


# ──────────────────────────────────────────────
# Body decoding
# ──────────────────────────────────────────────

def _decode_text(raw):
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def _parse_form(text):
    pairs = parse_qsl(text, keep_blank_values=True)
    return {key: value for key, value in pairs}


def parse_body(raw, content_type=None):
    """Decode a raw webhook body into a key/value document.

    JSON content types are parsed as JSON, form content types as
    key/value pairs. Anything else is tried as JSON, then as a query
    string.

    Raises MalformedPayload when nothing usable comes out.
    """
    text = _decode_text(raw).strip()
    if not text:
        raise MalformedPayload("Empty body")

    mime = (content_type or "").split(";")[0].strip().lower()

    if mime in JSON_CONTENT_TYPES:
        try:
            document = json.loads(text)
        except ValueError as e:
            raise MalformedPayload(f"Invalid JSON body: {e}") from e
    elif mime in FORM_CONTENT_TYPES:
        document = _parse_form(text)
    else:
        try:
            document = json.loads(text)
        except ValueError:
            document = _parse_form(text)
            # parse_qsl turns arbitrary text into {text: ""}; only accept
            # it when at least one pair actually had a value.
            if not any(document.values()):
                raise MalformedPayload("Body is neither JSON nor key/value pairs")

    if not isinstance(document, dict) or not document:
        raise MalformedPayload(
            f"Body decoded to {type(document).__name__}, expected an object"
        )
    return document


# ──────────────────────────────────────────────
# Field extraction
# ──────────────────────────────────────────────

def _pick(source, canonical, default=None):
    """Return the first non-empty alias value for a canonical field."""
    for alias in FIELD_ALIASES[canonical]:
        value = source.get(alias)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return default


def _as_str(value):
    if value is None:
        return None
    return str(value)


def coerce_amount(value):
    """Coerce a raw amount to a non-negative Decimal; 0 on parse failure."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        amount = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        logger.warning(f"Unparseable amount {value!r}, defaulting to 0")
        return Decimal("0")
    if not amount.is_finite():
        return Decimal("0")
    return abs(amount).quantize(Decimal("0.01"))


def parse_timestamp(value):
    """Parse an ISO-8601 string or unix timestamp into an aware datetime.

    Returns None when the value can't be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _buyer_name(source):
    name = _pick(source, "buyer_name")
    if name:
        return str(name)
    for first_key, last_key in BUYER_NAME_PARTS:
        parts = [
            str(source.get(key)).strip()
            for key in (first_key, last_key)
            if source.get(key)
        ]
        if parts:
            return " ".join(parts)
    return None


def _extract_payload_source(document):
    """Return the dict holding payload fields, or None if there isn't one.

    A nested "data"/"payload" key wins. When present but not an object,
    the payload is treated as missing. Flat (form-encoded IPN style)
    documents are read from the top level.
    """
    for key in PAYLOAD_KEYS:
        if key in document:
            nested = document[key]
            if isinstance(nested, str):
                # Some senders double-encode the nested object
                try:
                    nested = json.loads(nested)
                except ValueError:
                    return None
            return nested if isinstance(nested, dict) else None

    payload_aliases = set()
    for canonical in ("order_id", "amount", "product_name", "affiliate_id"):
        payload_aliases.update(FIELD_ALIASES[canonical])
    if payload_aliases & set(document):
        return document
    return None


def normalize_payload(source, default_currency="EUR"):
    """Build an EventPayload from a flat record (webhook data or API purchase)."""
    order_id = _as_str(_pick(source, "order_id")) or ""
    raw_date = _pick(source, "payment_date")

    return EventPayload(
        order_id=order_id,
        amount=coerce_amount(_pick(source, "amount")),
        product_id=_as_str(_pick(source, "product_id")),
        product_name=_as_str(_pick(source, "product_name")),
        currency=str(_pick(source, "currency", default_currency)).upper(),
        buyer_email=_as_str(_pick(source, "buyer_email")),
        buyer_name=_buyer_name(source),
        affiliate_id=_as_str(_pick(source, "affiliate_id")),
        affiliate_name=_as_str(_pick(source, "affiliate_name")),
        affiliate_email=_as_str(_pick(source, "affiliate_email")),
        status=str(_pick(source, "status", "completed")).lower(),
        payment_date=parse_timestamp(raw_date) or datetime.now(timezone.utc),
    )


def normalize_event(document, default_currency="EUR"):
    """Map a decoded document onto a CanonicalEvent.

    Never raises for missing fields — the validator decides whether the
    result is processable.
    """
    raw_kind = _as_str(_pick(document, "kind"))
    kind = None
    if raw_kind:
        kind = EVENT_KINDS.get(raw_kind.lower(), raw_kind.lower())

    source = _extract_payload_source(document)
    payload = normalize_payload(source, default_currency) if source is not None else None

    event_id = _as_str(_pick(document, "event_id"))
    if not event_id and source is not None and source is not document:
        event_id = _as_str(source.get("event_id"))

    return CanonicalEvent(
        kind=kind,
        event_id=event_id,
        raw_kind=raw_kind,
        payload=payload,
    )


def normalize(raw, content_type=None, default_currency="EUR"):
    """parse_body() + normalize_event() in one step."""
    document = parse_body(raw, content_type)
    return normalize_event(document, default_currency=default_currency)
