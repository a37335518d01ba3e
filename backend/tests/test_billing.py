import io
import json
import unittest
from unittest import mock
from urllib.error import URLError

from backend.billing import (
    BillingConfig,
    BillingProviderError,
    InvalidWebhookPayload,
    LemonSqueezyClient,
    WebhookEvent,
    compute_signature,
    parse_webhook_event,
    verify_signature,
)


def webhook_body(event_name: str = "subscription_created", user_id="7") -> bytes:
    return json.dumps(
        {
            "meta": {"event_name": event_name, "custom_data": {"user_id": user_id}},
            "data": {"id": "sub_123", "attributes": {"status": "active"}},
        }
    ).encode("utf-8")


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SignatureTests(unittest.TestCase):
    def test_matching_signature_verifies(self) -> None:
        body = webhook_body()
        signature = compute_signature(body, "secret")

        self.assertTrue(verify_signature(body, signature, "secret"))

    def test_tampered_body_fails(self) -> None:
        signature = compute_signature(webhook_body(), "secret")

        self.assertFalse(verify_signature(webhook_body(user_id="8"), signature, "secret"))

    def test_missing_secret_or_signature_fails(self) -> None:
        body = webhook_body()

        self.assertFalse(verify_signature(body, compute_signature(body, "secret"), None))
        self.assertFalse(verify_signature(body, None, "secret"))

    def test_signature_is_hex_sha256(self) -> None:
        self.assertEqual(
            compute_signature(b"", "key"),
            "5d5d139563c95b5967b9bd9a8c9b233a9dedb45072794cd232dc1b74832607d0",
        )

    def test_non_ascii_signature_fails(self) -> None:
        body = webhook_body()

        self.assertFalse(verify_signature(body, "\xe9" * 64, "secret"))
        self.assertFalse(verify_signature(body, "sig\u2603", "secret"))


class WebhookParsingTests(unittest.TestCase):
    def test_parses_subscription_event(self) -> None:
        event = parse_webhook_event(webhook_body("subscription_updated"))

        self.assertEqual(
            event,
            WebhookEvent(
                event_name="subscription_updated",
                subscription_id="sub_123",
                user_id=7,
                status="active",
            ),
        )

    def test_ignores_other_events(self) -> None:
        self.assertIsNone(parse_webhook_event(webhook_body("order_created")))

    def test_rejects_invalid_payloads(self) -> None:
        with self.assertRaises(InvalidWebhookPayload):
            parse_webhook_event(b"not json")
        with self.assertRaises(InvalidWebhookPayload):
            parse_webhook_event(webhook_body(user_id="abc"))
        with self.assertRaises(InvalidWebhookPayload):
            parse_webhook_event(b'{"meta": {"event_name": "subscription_created"}}')


class LemonSqueezyClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = LemonSqueezyClient(
            BillingConfig(
                api_key="key",
                store_id="11",
                variant_id="22",
                app_url="https://app.example.com/",
            )
        )

    def test_create_checkout_posts_json_api_body(self) -> None:
        payload = {"data": {"attributes": {"url": "https://checkout.example.com/abc"}}}
        with mock.patch(
            "backend.billing.urlopen",
            return_value=FakeResponse(json.dumps(payload).encode("utf-8")),
        ) as urlopen:
            url = self.client.create_checkout(42)

        self.assertEqual(url, "https://checkout.example.com/abc")
        request = urlopen.call_args.args[0]
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.full_url, "https://api.lemonsqueezy.com/v1/checkouts")
        self.assertEqual(request.get_header("Authorization"), "Bearer key")
        body = json.loads(request.data)
        self.assertEqual(body["data"]["attributes"]["checkout_data"]["custom"]["user_id"], "42")
        self.assertEqual(
            body["data"]["attributes"]["product_options"]["redirect_url"],
            "https://app.example.com/",
        )
        self.assertEqual(body["data"]["relationships"]["variant"]["data"]["id"], "22")

    def test_portal_url_lookup(self) -> None:
        payload = {
            "data": {"attributes": {"urls": {"customer_portal": "https://portal.example.com"}}}
        }
        with mock.patch(
            "backend.billing.urlopen",
            return_value=FakeResponse(json.dumps(payload).encode("utf-8")),
        ) as urlopen:
            url = self.client.get_customer_portal_url("sub_9")

        self.assertEqual(url, "https://portal.example.com")
        self.assertTrue(urlopen.call_args.args[0].full_url.endswith("/subscriptions/sub_9"))

    def test_missing_url_raises(self) -> None:
        with mock.patch("backend.billing.urlopen", return_value=FakeResponse(b'{"data": {}}')):
            with self.assertRaises(BillingProviderError):
                self.client.create_checkout(1)

    def test_network_failure_raises_provider_error(self) -> None:
        with mock.patch("backend.billing.urlopen", side_effect=URLError("down")):
            with self.assertRaises(BillingProviderError):
                self.client.get_customer_portal_url("sub_1")

    def test_unconfigured_client_raises(self) -> None:
        with self.assertRaises(BillingProviderError):
            LemonSqueezyClient(BillingConfig()).create_checkout(1)


if __name__ == "__main__":
    unittest.main()
