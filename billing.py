import json
import logging

import stripe

from errors import DownstreamUnavailable, WebhookSignatureError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class StripeBilling:
    def __init__(self, secret_key: str, price_id: str, webhook_secret: str, frontend_url: str, timeout: float = 30):
        self.secret_key = secret_key
        self.price_id = price_id
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.http_client = stripe.RequestsClient(timeout=timeout)

    def success_url(self, deal_id: str) -> str:
        return f"{self.frontend_url}/report/{deal_id}?success=1"

    def cancel_url(self, deal_id: str) -> str:
        return f"{self.frontend_url}/paywall/{deal_id}?canceled=1"

    def create_checkout(self, deal_id: str, user_id: str) -> tuple[str, str]:
        """Create a hosted checkout session. Returns (session_id, checkout_url).

        dealId/userId metadata is how the webhook finds the deal again. Blocking;
        async callers run it in a worker thread.
        """
        if not self.secret_key:
            raise DownstreamUnavailable("Stripe not configured (STRIPE_SECRET_KEY missing)")
        if not self.price_id:
            raise DownstreamUnavailable("Server misconfigured (Missing Stripe Price ID)")
        stripe.api_key = self.secret_key
        stripe.default_http_client = self.http_client

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{"price": self.price_id, "quantity": 1}],
                success_url=self.success_url(deal_id),
                cancel_url=self.cancel_url(deal_id),
                metadata={"dealId": deal_id, "userId": user_id},
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout for deal %s failed: %s", deal_id, e)
            raise DownstreamUnavailable("Could not start checkout. Please try again.", retryable=True) from e
        return session.id, session.url

    def parse_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify a webhook delivery and return the event as a plain dict. Fails closed."""
        if not self.webhook_secret:
            logger.warning("Webhook rejected: STRIPE_WEBHOOK_SECRET not configured")
            raise WebhookSignatureError()
        if not signature:
            logger.warning("Webhook rejected: missing Stripe-Signature header")
            raise WebhookSignatureError()
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("Webhook rejected: %s", e)
            raise WebhookSignatureError(f"Webhook Error: {e}") from e
        return json.loads(payload)
