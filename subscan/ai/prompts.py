"""Prompt templates for subscription classification."""

from typing import Optional

from pydantic import BaseModel

SUBSCRIPTION_SYSTEM_PROMPT = (
    "You analyze emails to find recurring subscriptions and billing "
    "relationships. You answer with a single JSON object and nothing else."
)


class SubscriptionClassificationPrompt(BaseModel):
    """Prompt schema for classifying one email."""

    subject: str
    sender: str
    date: Optional[str] = None
    content: str
    max_content_chars: int = 3000

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        body = self.content[: self.max_content_chars]

        return f"""Analyze this email and determine if it is about a recurring subscription, membership or billing relationship.

Subject: {self.subject}
From: {self.sender}
Date: {self.date or "unknown"}

Content:
{body}

Respond with a JSON object with these fields:
- is_subscription: true or false
- subscription_name: name of the subscription or service, or null
- price: numeric amount charged, or null
- currency: three-letter currency code (e.g. "USD")
- billing_cycle: one of "monthly", "yearly", "quarterly", "weekly"
- next_billing_date: next charge date as YYYY-MM-DD, or null
- service_provider: company providing the service, or null
- confidence_score: number between 0 and 1

Only mark is_subscription true for recurring charges, not one-time purchases.
Respond with JSON only."""
