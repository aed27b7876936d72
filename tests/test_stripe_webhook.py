"""
Tests for the Stripe webhook Lambda handler.
"""

import base64
import json
from unittest.mock import patch

import pytest

from conftest import make_stripe_event, sign_payload, stripe_subscription
from shared.errors import PersistenceError, ProviderError

RETRIEVE = "shared.stripe_client.stripe.Subscription.retrieve"


def _body(result):
    return json.loads(result["body"])


def _checkout_session(metadata=None):
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": "cus_123",
        "subscription": "sub_999",
        "customer_details": {"email": "vegan@example.com"},
        "metadata": {"userId": "user_7", "tierId": "medium"} if metadata is None else metadata,
    }


class TestWebhookInfo:
    def test_get_describes_endpoint(self, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["httpMethod"] = "GET"

        result = handler(api_gateway_event, {})

        assert result["statusCode"] == 200
        body = _body(result)
        assert body["endpoint"] == "/webhooks/stripe"
        assert body["method"] == "POST only"
        assert body["status"] == "configured"
        assert "checkout.session.completed" in body["events"]

    def test_other_methods_rejected(self, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["httpMethod"] = "PUT"

        assert handler(api_gateway_event, {})["statusCode"] == 405


class TestSignatureHandling:
    def test_tampered_payload_rejected_before_routing(self, mock_dynamodb, api_gateway_event):
        from api.stripe_webhook import handler

        original = json.dumps(make_stripe_event("checkout.session.completed", _checkout_session()))
        tampered = original.replace("user_7", "user_evil")
        api_gateway_event["body"] = tampered
        api_gateway_event["headers"] = {"stripe-signature": sign_payload(original)}

        with patch("api.stripe_webhook.build_router") as build_router:
            result = handler(api_gateway_event, {})

        assert result["statusCode"] == 400
        assert _body(result) == {"error": "Invalid signature"}
        build_router.assert_not_called()

    def test_missing_signature_rejected(self, mock_dynamodb, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["body"] = json.dumps(make_stripe_event("customer.created", {}))

        result = handler(api_gateway_event, {})

        assert result["statusCode"] == 400
        assert _body(result) == {"error": "Invalid signature"}

    def test_unconfigured_secret_returns_500(self, mock_dynamodb, signed_webhook, monkeypatch):
        from api.stripe_webhook import handler

        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

        result = handler(signed_webhook(make_stripe_event("customer.created", {})), {})

        assert result["statusCode"] == 500
        assert _body(result) == {"error": "Webhook not configured"}

    def test_signature_header_case_insensitive(self, mock_dynamodb, api_gateway_event):
        from api.stripe_webhook import handler

        payload = json.dumps(make_stripe_event("customer.created", {}))
        api_gateway_event["body"] = payload
        api_gateway_event["headers"] = {"STRIPE-SIGNATURE": sign_payload(payload)}

        assert handler(api_gateway_event, {})["statusCode"] == 200

    def test_base64_encoded_body(self, mock_dynamodb, api_gateway_event):
        from api.stripe_webhook import handler

        payload = json.dumps(make_stripe_event("customer.created", {}))
        api_gateway_event["body"] = base64.b64encode(payload.encode("utf-8")).decode("ascii")
        api_gateway_event["isBase64Encoded"] = True
        api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(payload)}

        assert handler(api_gateway_event, {})["statusCode"] == 200


class TestCheckoutFlow:
    def test_checkout_upgrades_user_and_logs_event(self, mock_dynamodb, verified_sender, signed_webhook):
        from api.stripe_webhook import handler

        event = signed_webhook(make_stripe_event("checkout.session.completed", _checkout_session(), "evt_co_1"))

        with patch(RETRIEVE, return_value=stripe_subscription()):
            result = handler(event, {})

        assert result["statusCode"] == 200
        assert _body(result) == {"received": True}

        users = mock_dynamodb.Table("plantspack-users")
        item = users.get_item(Key={"pk": "user_7", "sk": "SUBSCRIPTION"})["Item"]
        assert item["subscription_tier"] == "medium"
        assert item["subscription_status"] == "active"
        assert item["stripe_subscription_id"] == "sub_999"
        assert item["current_period_start"] == "2023-11-14T22:13:20+00:00"
        assert item["current_period_end"] == "2023-12-14T22:13:20+00:00"

        # Early purchaser side effect
        assert "Item" in users.get_item(Key={"pk": "user_7", "sk": "PROMOTION#early_purchaser"})

        log_item = mock_dynamodb.Table("plantspack-billing-events").get_item(
            Key={"pk": "evt_co_1", "sk": "checkout.session.completed"}
        )["Item"]
        assert log_item["outcome"] == "applied"
        assert log_item["subscription_id"] == "sub_999"

    def test_duplicate_delivery_is_acknowledged_and_idempotent(self, mock_dynamodb, verified_sender, signed_webhook):
        from api.stripe_webhook import handler

        stripe_event = make_stripe_event("checkout.session.completed", _checkout_session(), "evt_co_dup")
        users = mock_dynamodb.Table("plantspack-users")

        with patch(RETRIEVE, return_value=stripe_subscription()):
            assert handler(signed_webhook(stripe_event), {})["statusCode"] == 200
            first = users.get_item(Key={"pk": "user_7", "sk": "SUBSCRIPTION"})["Item"]
            assert handler(signed_webhook(stripe_event), {})["statusCode"] == 200
            second = users.get_item(Key={"pk": "user_7", "sk": "SUBSCRIPTION"})["Item"]

        first.pop("updated_at")
        second.pop("updated_at")
        assert first == second

    def test_missing_metadata_acknowledged_without_write(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        stripe_event = make_stripe_event(
            "checkout.session.completed", _checkout_session(metadata={"userId": "user_7"}), "evt_co_bad"
        )

        with patch(RETRIEVE) as retrieve:
            result = handler(signed_webhook(stripe_event), {})

        assert result["statusCode"] == 200
        assert _body(result) == {"received": True}
        retrieve.assert_not_called()
        users = mock_dynamodb.Table("plantspack-users")
        assert "Item" not in users.get_item(Key={"pk": "user_7", "sk": "SUBSCRIPTION"})
        log_item = mock_dynamodb.Table("plantspack-billing-events").get_item(
            Key={"pk": "evt_co_bad", "sk": "checkout.session.completed"}
        )["Item"]
        assert log_item["outcome"] == "rejected"


class TestOtherEvents:
    def test_payment_failed_marks_past_due(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler
        from shared.subscription_store import SubscriptionStore

        SubscriptionStore().upsert_subscription_state(
            "user_42", "premium", "active", "sub_123", "cus_42", "2023-11-14T22:13:20+00:00", None
        )
        stripe_event = make_stripe_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_123"})

        result = handler(signed_webhook(stripe_event), {})

        assert result["statusCode"] == 200
        item = mock_dynamodb.Table("plantspack-users").get_item(Key={"pk": "user_42", "sk": "SUBSCRIPTION"})["Item"]
        assert item["subscription_tier"] == "premium"
        assert item["subscription_status"] == "past_due"

    def test_unrecognized_event_acknowledged(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        result = handler(signed_webhook(make_stripe_event("customer.created", {"id": "cus_1"}, "evt_other")), {})

        assert result["statusCode"] == 200
        assert _body(result) == {"received": True}
        log_item = mock_dynamodb.Table("plantspack-billing-events").get_item(
            Key={"pk": "evt_other", "sk": "customer.created"}
        )["Item"]
        assert log_item["outcome"] == "skipped"

    def test_request_log_carries_event_type(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        with patch("api.stripe_webhook.log_api_request") as log_request:
            handler(signed_webhook(make_stripe_event("customer.created", {"id": "cus_1"})), {})

        assert log_request.call_args.args[3] == 200
        assert log_request.call_args.args[5] == "customer.created"

    def test_request_log_without_event_type_for_rejected_signature(self, mock_dynamodb, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["body"] = json.dumps(make_stripe_event("customer.created", {}))

        with patch("api.stripe_webhook.log_api_request") as log_request:
            handler(api_gateway_event, {})

        assert log_request.call_args.args[3] == 400
        assert log_request.call_args.args[5] is None

    def test_verified_event_without_id_acknowledged(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        result = handler(signed_webhook({"type": "customer.created", "data": {"object": {}}}), {})

        assert result["statusCode"] == 200

    def test_verified_event_with_malformed_data_acknowledged(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        stripe_event = {"id": "evt_bad_data", "type": "checkout.session.completed", "data": ["cs_test_1"]}

        result = handler(signed_webhook(stripe_event), {})

        assert result["statusCode"] == 200
        assert _body(result) == {"received": True}


class TestRetryableFailures:
    @pytest.mark.parametrize(
        "target,error",
        [
            ("shared.subscription_store.SubscriptionStore.upsert_subscription_state", PersistenceError("down")),
            ("shared.stripe_client.StripeProvider.retrieve_subscription", ProviderError("timeout")),
        ],
    )
    def test_retryable_errors_return_500(self, mock_dynamodb, signed_webhook, target, error):
        from api.stripe_webhook import handler

        stripe_event = make_stripe_event("checkout.session.completed", _checkout_session(), "evt_retry")

        with patch(RETRIEVE, return_value=stripe_subscription()), patch(target, side_effect=error):
            result = handler(signed_webhook(stripe_event), {})

        assert result["statusCode"] == 500
        assert _body(result) == {"error": "Webhook processing failed"}
        # Not logged, so the re-delivery is recorded once it succeeds
        log = mock_dynamodb.Table("plantspack-billing-events")
        assert "Item" not in log.get_item(Key={"pk": "evt_retry", "sk": "checkout.session.completed"})

    def test_unexpected_error_returns_500(self, mock_dynamodb, signed_webhook):
        from api.stripe_webhook import handler

        with patch("api.stripe_webhook.build_router", side_effect=RuntimeError("boom")):
            result = handler(signed_webhook(make_stripe_event("customer.created", {})), {})

        assert result["statusCode"] == 500
        assert _body(result) == {"error": "Webhook processing failed"}
