"""Shared billing utilities: Stripe secrets, price mapping and value conversion."""

import json
import logging
import os
import time
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import RECOGNIZED_PROVIDER_STATUSES

logger = logging.getLogger(__name__)

STRIPE_CACHE_TTL = 300  # 5 minutes

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0


def _read_secret(secret_id: str, json_field: str) -> str | None:
    """Read a secret that may be a raw string or a JSON object."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_id)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or None
    return secret_value or None


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret (cached with TTL).

    Secrets Manager ARNs take precedence; STRIPE_API_KEY and
    STRIPE_WEBHOOK_SECRET are used when the ARNs are not configured.
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_CACHE_TTL:
        return _stripe_secrets_cache

    secret_arn = os.environ.get("STRIPE_SECRET_ARN")
    webhook_secret_arn = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

    if secret_arn:
        api_key = _read_secret(secret_arn, "key")
    else:
        api_key = os.environ.get("STRIPE_API_KEY") or None

    if webhook_secret_arn:
        webhook_secret = _read_secret(webhook_secret_arn, "secret")
    else:
        webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET") or None

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def clear_stripe_secrets_cache() -> None:
    """Drop cached secrets. Used by tests and after secret rotation."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0


def get_price_to_tier() -> dict[str, str]:
    """Price id -> tier mapping from the environment.

    Empty strings are skipped so an unset price never matches.
    """
    mapping = {}
    medium_price = os.environ.get("STRIPE_MEDIUM_PRICE_ID")
    premium_price = os.environ.get("STRIPE_PREMIUM_PRICE_ID")
    if medium_price:
        mapping[medium_price] = "medium"
    if premium_price:
        mapping[premium_price] = "premium"
    return mapping


def epoch_to_iso(value: int | float | None) -> str | None:
    """Convert provider epoch seconds to an ISO-8601 UTC timestamp."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def map_provider_status(provider_status: str | None) -> str:
    """Map the provider's subscription status onto the local vocabulary.

    Unrecognized statuses (trialing, paused, incomplete, ...) map to "active"
    so an unfamiliar status string never locks out a paying user.
    """
    mapped = RECOGNIZED_PROVIDER_STATUSES.get(provider_status or "")
    if mapped is None:
        logger.info(f"Unrecognized provider status {provider_status!r}, treating as active")
        return "active"
    return mapped
