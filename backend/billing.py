from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import os
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {"subscription_created", "subscription_updated"}
JSON_API_CONTENT_TYPE = "application/vnd.api+json"


class BillingProviderError(RuntimeError):
    """Raised when Lemon Squeezy cannot be reached or returns an unusable payload."""


class InvalidWebhookPayload(ValueError):
    """Raised when a signed webhook body is missing the fields we persist."""


@dataclass(frozen=True)
class BillingConfig:
    api_key: str | None = None
    store_id: str | None = None
    variant_id: str | None = None
    webhook_secret: str | None = None
    app_url: str = "http://localhost:3000"
    base_url: str = "https://api.lemonsqueezy.com/v1"
    timeout_seconds: int = 10


def load_billing_config() -> BillingConfig:
    return BillingConfig(
        api_key=os.getenv("LEMONSQUEEZY_API_KEY"),
        store_id=os.getenv("LEMONSQUEEZY_STORE_ID"),
        variant_id=os.getenv("LEMONSQUEEZY_VARIANT_ID"),
        webhook_secret=os.getenv("LEMONSQUEEZY_WEBHOOK_SECRET"),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
    )


@dataclass(frozen=True)
class WebhookEvent:
    event_name: str
    subscription_id: str
    user_id: int
    status: str


@dataclass
class LemonSqueezyClient:
    config: BillingConfig

    def get_customer_portal_url(self, subscription_id: str) -> str:
        payload = self._request("GET", f"/subscriptions/{subscription_id}")
        url = _dig(payload, "data", "attributes", "urls", "customer_portal")
        if not url:
            raise BillingProviderError("Subscription response missing customer portal URL")
        return url

    def create_checkout(self, user_id: int) -> str:
        if not self.config.store_id or not self.config.variant_id:
            raise BillingProviderError("Lemon Squeezy store or variant is not configured")
        body = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": {"custom": {"user_id": str(user_id)}},
                    "product_options": {"redirect_url": f"{self.config.app_url.rstrip('/')}/"},
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self.config.store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(self.config.variant_id)}},
                },
            }
        }
        payload = self._request("POST", "/checkouts", body)
        url = _dig(payload, "data", "attributes", "url")
        if not url:
            raise BillingProviderError("Checkout response missing URL")
        return url

    def _request(
        self, method: str, path: str, body: Mapping[str, Any] | None = None
    ) -> Mapping[str, Any]:
        if not self.config.api_key:
            raise BillingProviderError("Lemon Squeezy API key is not configured")
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(
            f"{self.config.base_url}{path}",
            data=data,
            method=method,
            headers={
                "Accept": JSON_API_CONTENT_TYPE,
                "Content-Type": JSON_API_CONTENT_TYPE,
                "Authorization": f"Bearer {self.config.api_key}",
            },
        )
        logger.debug("Lemon Squeezy %s %s", method, path)
        try:
            with urlopen(request, timeout=self.config.timeout_seconds) as response:
                return json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise BillingProviderError(f"Lemon Squeezy {method} {path} failed") from exc


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(
        compute_signature(body, secret).encode("ascii"),
        signature.strip().encode("utf-8"),
    )


def parse_webhook_event(body: bytes) -> WebhookEvent | None:
    """Extract the subscription fields from a verified webhook body.

    Returns ``None`` for event types we do not persist.
    """
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise InvalidWebhookPayload("Webhook body is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("Webhook body must be a JSON object.")

    event_name = _dig(payload, "meta", "event_name")
    if event_name not in SUBSCRIPTION_EVENTS:
        return None

    subscription_id = _dig(payload, "data", "id")
    raw_user_id = _dig(payload, "meta", "custom_data", "user_id")
    status = _dig(payload, "data", "attributes", "status")
    if subscription_id is None or raw_user_id is None or not status:
        raise InvalidWebhookPayload("Webhook is missing subscription, user or status.")
    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError) as exc:
        raise InvalidWebhookPayload("Webhook user id must be an integer.") from exc
    return WebhookEvent(
        event_name=event_name,
        subscription_id=str(subscription_id),
        user_id=user_id,
        status=str(status),
    )


def _dig(payload: Any, *keys: str) -> Any:
    current = payload
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current
