"""
Shared pytest fixtures for PlantsPack billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
import stripe
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret_key"
API_KEY = "sk_test_123"
MEDIUM_PRICE = "price_medium_test"
PREMIUM_PRICE = "price_premium_test"
EMAIL_SENDER = "noreply@plantspack.test"


def pytest_configure(config):
    """Set AWS credentials and billing config before test collection.

    Modules read table names at import time, so this must run before any
    test module imports them.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    os.environ["USERS_TABLE"] = "plantspack-users"
    os.environ["BILLING_EVENTS_TABLE"] = "plantspack-billing-events"
    os.environ["SUBSCRIPTION_EMAIL_SENDER"] = EMAIL_SENDER
    os.environ["STRIPE_SECRET_ARN"] = ""
    os.environ["STRIPE_WEBHOOK_SECRET_ARN"] = ""
    os.environ["STRIPE_API_KEY"] = API_KEY
    os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    os.environ["STRIPE_MEDIUM_PRICE_ID"] = MEDIUM_PRICE
    os.environ["STRIPE_PREMIUM_PRICE_ID"] = PREMIUM_PRICE


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients

    reset_clients()


@pytest.fixture(autouse=True)
def reset_stripe_secrets_cache():
    """Drop cached Stripe secrets so each test sees its own environment."""
    from shared.billing_utils import clear_stripe_secrets_cache

    clear_stripe_secrets_cache()
    yield
    clear_stripe_secrets_cache()


def create_dynamodb_tables(dynamodb):
    """Create the users and billing-events tables.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    for table_name in ("plantspack-users", "plantspack-billing-events"):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked AWS (DynamoDB, SES) with tables created."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def users_table(mock_dynamodb):
    return mock_dynamodb.Table("plantspack-users")


@pytest.fixture
def events_table(mock_dynamodb):
    return mock_dynamodb.Table("plantspack-billing-events")


@pytest.fixture
def verified_sender(mock_dynamodb):
    """SES only accepts mail from verified identities."""
    ses = boto3.client("ses", region_name="us-east-1")
    ses.verify_email_identity(EmailAddress=EMAIL_SENDER)
    return ses


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "path": "/webhooks/stripe",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.{payload}"
    signature = hmac.new(secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000100,
        "livemode": False,
        "data": {"object": data_object},
    }


def make_subscription(
    subscription_id: str = "sub_999",
    user_id: str | None = "user_7",
    tier: str | None = "medium",
    status: str = "active",
    period_start: int = 1700000000,
    period_end: int = 1702592000,
    price_id: str | None = None,
    customer: str = "cus_123",
) -> dict:
    """Subscription object shaped like the Stripe API response."""
    metadata = {}
    if user_id:
        metadata["userId"] = user_id
    if tier:
        metadata["tierId"] = tier
    subscription = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "metadata": metadata,
        "items": {"data": []},
    }
    if price_id:
        subscription["items"]["data"].append({"id": "si_1", "price": {"id": price_id}})
    return subscription


def stripe_subscription(*args, **kwargs) -> stripe.Subscription:
    """Subscription as the SDK returns it from Subscription.retrieve."""
    return stripe.Subscription.construct_from(make_subscription(*args, **kwargs), API_KEY)


@pytest.fixture
def signed_webhook(api_gateway_event):
    """Factory: API Gateway POST event carrying a correctly signed Stripe event."""

    def _build(stripe_event: dict, secret: str = WEBHOOK_SECRET) -> dict:
        payload = json.dumps(stripe_event)
        api_gateway_event["body"] = payload
        api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        return api_gateway_event

    return _build
