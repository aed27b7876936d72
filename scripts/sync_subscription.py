#!/usr/bin/env python3
"""
Re-sync subscription state from Stripe.

Fetches each subscription from Stripe and applies it exactly as a
customer.subscription.updated webhook would. Use this to repair users whose
state drifted because webhooks were missed or failed permanently.

Usage:
    # Dry run (shows the state that would be written)
    python scripts/sync_subscription.py --subscription-id sub_123 --dry-run

    # Actually write, several subscriptions at once
    python scripts/sync_subscription.py --subscription-id sub_123 --subscription-id sub_456
"""

import argparse
import os
import sys
import time

# Add functions directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../functions"))

from shared.billing_utils import get_price_to_tier, get_stripe_secrets  # noqa: E402
from shared.errors import BillingError  # noqa: E402
from shared.reconciliation import EventRouter  # noqa: E402
from shared.stripe_client import StripeProvider  # noqa: E402
from shared.subscription_store import SubscriptionStore  # noqa: E402

# Rate limiting for Stripe API (25 req/sec is safe)
STRIPE_REQUESTS_PER_SECOND = 10
STRIPE_REQUEST_INTERVAL = 1.0 / STRIPE_REQUESTS_PER_SECOND


def sync(router: EventRouter, subscription_ids: list[str], dry_run: bool = False) -> dict:
    """Sync each subscription; returns counts of synced and failed ids."""
    counts = {"synced": 0, "failed": 0}
    last_request_time = 0.0

    for i, sub_id in enumerate(subscription_ids):
        elapsed = time.time() - last_request_time
        if elapsed < STRIPE_REQUEST_INTERVAL:
            time.sleep(STRIPE_REQUEST_INTERVAL - elapsed)
        last_request_time = time.time()

        prefix = f"  [{i + 1}/{len(subscription_ids)}] {sub_id}"
        try:
            subscription = router.provider.retrieve_subscription(sub_id)
            state = router.sync_subscription(subscription, dry_run=dry_run)
        except BillingError as e:
            print(f"{prefix} - {e.message}")
            counts["failed"] += 1
            continue

        action = "would write" if dry_run else "wrote"
        print(
            f"{prefix} - {action} user={state.user_id} tier={state.tier} status={state.status} "
            f"period={state.current_period_start} .. {state.current_period_end}"
        )
        counts["synced"] += 1

    return counts


def main(argv=None):
    parser = argparse.ArgumentParser(description="Re-sync subscription state from Stripe")
    parser.add_argument(
        "--subscription-id",
        action="append",
        required=True,
        dest="subscription_ids",
        help="Stripe subscription id (repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be written without making changes")
    args = parser.parse_args(argv)

    if args.dry_run:
        print("=== DRY RUN MODE - No changes will be made ===\n")

    api_key, _ = get_stripe_secrets()
    if not api_key:
        print("Set STRIPE_API_KEY or STRIPE_SECRET_ARN before running.")
        return 1

    router = EventRouter(
        store=SubscriptionStore(),
        provider=StripeProvider(api_key, None, get_price_to_tier()),
    )
    counts = sync(router, args.subscription_ids, dry_run=args.dry_run)

    print(f"\nSynced: {counts['synced']}, failed: {counts['failed']}")
    return 0 if counts["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
