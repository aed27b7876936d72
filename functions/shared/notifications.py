"""Subscription emails sent through SES."""

import logging
import os

from botocore.exceptions import BotoCoreError, ClientError

from shared.aws_clients import get_ses
from shared.constants import TIER_DISPLAY_NAMES
from shared.errors import SecondaryEffectFailure

logger = logging.getLogger(__name__)

SUBSCRIPTION_EMAIL_SENDER = os.environ.get("SUBSCRIPTION_EMAIL_SENDER") or "noreply@plantspack.com"
APP_BASE_URL = os.environ.get("APP_BASE_URL") or "https://plantspack.com"

TIER_IMAGE_LIMITS = {"medium": 3, "premium": 5}


class SubscriptionNotifier:
    def __init__(self, sender: str = None, base_url: str = None):
        self.sender = sender or SUBSCRIPTION_EMAIL_SENDER
        self.base_url = (base_url or APP_BASE_URL).rstrip("/")

    def send_subscription_confirmation(self, email: str, tier: str) -> None:
        """Send the welcome email for a new paid subscription.

        Raises:
            SecondaryEffectFailure: if SES rejects or cannot be reached
        """
        tier_name = TIER_DISPLAY_NAMES.get(tier, tier)
        image_limit = TIER_IMAGE_LIMITS.get(tier, 1)
        priority = "<li>Priority support</li>" if tier == "premium" else ""
        settings_url = f"{self.base_url}/settings/subscription"

        try:
            get_ses().send_email(
                Source=self.sender,
                Destination={"ToAddresses": [email]},
                Message={
                    "Subject": {
                        "Data": f"Welcome to PlantsPack {tier_name}!",
                        "Charset": "UTF-8",
                    },
                    "Body": {
                        "Html": {
                            "Data": (
                                '<html><body style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto;padding:20px;">'
                                '<h1 style="color:#16a34a;">Thank You!</h1>'
                                f'<p style="color:#374151;font-size:16px;">Thank you for upgrading to <strong>PlantsPack {tier_name}</strong>! '
                                "Your support helps us build a better plant-based community.</p>"
                                f'<h3 style="color:#16a34a;">Your {tier_name} benefits:</h3>'
                                "<ul>"
                                "<li>Extended post length (up to 1000 characters)</li>"
                                f"<li>Upload up to {image_limit} images per post</li>"
                                "<li>Add location to your posts</li>"
                                "<li>Access to analytics</li>"
                                f"{priority}"
                                "</ul>"
                                f'<a href="{settings_url}" '
                                'style="display:inline-block;background:#16a34a;color:white;padding:12px 24px;text-decoration:none;border-radius:6px;margin:20px 0;">'
                                "Manage Subscription</a>"
                                "</body></html>"
                            ),
                            "Charset": "UTF-8",
                        },
                        "Text": {
                            "Data": (
                                f"Thank you for upgrading to PlantsPack {tier_name}!\n\n"
                                f"Your {tier_name} benefits are now active:\n"
                                "- Extended post length (up to 1000 characters)\n"
                                f"- Upload up to {image_limit} images per post\n"
                                "- Add location to your posts\n"
                                "- Access to analytics\n"
                                + ("- Priority support\n" if tier == "premium" else "")
                                + f"\nManage your subscription at: {settings_url}"
                            ),
                            "Charset": "UTF-8",
                        },
                    },
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise SecondaryEffectFailure("subscription_email", str(e)) from e

        logger.info(f"Subscription confirmation sent to {email[:3]}***")
