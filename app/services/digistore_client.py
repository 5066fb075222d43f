"""Digistore24 REST API client for the pull-sync path.

Authenticates with the X-DS-API-KEY header. Transient failures
(connection errors, timeouts, 429 and 5xx) are retried with exponential
backoff; anything else — or the last failed attempt — raises
DigistoreApiError.
"""

import logging
import time

import requests

from app.exceptions import ConfigurationMissing, DigistoreApiError

logger = logging.getLogger(__name__)

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class DigistoreClient:
    """Thin wrapper over the purchases / affiliates endpoints."""

    def __init__(self, api_key, base_url, http=None, timeout=15,
                 max_retries=3, base_delay=1.0, sleep=time.sleep):
        if not api_key:
            raise ConfigurationMissing("Digistore24 API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("DIGISTORE24_API_KEY"),
            base_url=config.get("DIGISTORE24_API_URL"),
        )

    def _request(self, method, endpoint, params=None):
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "X-DS-API-KEY": self.api_key,
            "Accept": "application/json",
        }

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.http.request(
                    method, url, params=params, headers=headers, timeout=self.timeout
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == self.max_retries:
                    raise DigistoreApiError(
                        f"Network error: {e}", code="NETWORK_ERROR"
                    ) from e
                self._backoff(attempt, f"connection error: {type(e).__name__}")
                continue

            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                self._backoff(attempt, f"HTTP {resp.status_code}")
                continue

            if not resp.ok:
                raise DigistoreApiError(
                    f"API request failed: {resp.text[:200]}",
                    code="API_ERROR",
                    status_code=resp.status_code,
                )

            try:
                return resp.json()
            except ValueError as e:
                raise DigistoreApiError(
                    "API returned a non-JSON response", code="INVALID_RESPONSE",
                    status_code=resp.status_code,
                ) from e

    def _backoff(self, attempt, why):
        delay = self.base_delay * (2 ** attempt)
        logger.warning(
            f"Digistore24 retry {attempt + 1}/{self.max_retries} ({why}), "
            f"waiting {delay:.1f}s"
        )
        self._sleep(delay)

    def list_purchases(self, limit=50, page=1, start_date=None, end_date=None):
        """Return {"data": [...], "meta": {...}} for one page of purchases."""
        params = {"limit": limit, "page": page}
        if start_date:
            params["start_date"] = start_date
        if end_date:
            params["end_date"] = end_date

        body = self._request("GET", "purchases", params=params) or {}
        return {
            "data": body.get("data") or [],
            "meta": body.get("meta") or {"page": page, "limit": limit},
        }

    def get_purchase(self, order_id):
        """Return a single purchase dict or None if the API has none."""
        body = self._request("GET", f"purchases/{order_id}") or {}
        return body.get("data")
